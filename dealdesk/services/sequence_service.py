from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from dealdesk.config import settings
from dealdesk.models import DocumentType, SequenceCounter

logger = logging.getLogger(__name__)

DEAL_SEQUENCE = 'DEAL'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def sequence_kind(kind: str | DocumentType) -> str:
    value = kind.value if isinstance(kind, DocumentType) else str(kind)
    value = value.strip().upper()
    if not value:
        raise ValueError('Sequence kind is required')
    return value


def _insert_counter_if_missing(db: Session, *, dealer_id: int, kind: str, start_after: int) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        insert = postgresql.insert
    elif dialect == 'sqlite':
        insert = sqlite.insert
    else:
        raise RuntimeError(f'Unsupported database dialect for sequence allocation: {dialect}')
    stmt = (
        insert(SequenceCounter)
        .values(dealer_id=dealer_id, kind=kind, last_value=start_after, updated_at=_now())
        .on_conflict_do_nothing(index_elements=['dealer_id', 'kind'])
    )
    db.execute(stmt)


def next_number(db: Session, *, dealer_id: int, kind: str | DocumentType) -> int:
    """Allocate the next number for ``(dealer_id, kind)``.

    The increment and the read happen in one ``UPDATE ... RETURNING`` statement,
    so concurrent callers each receive a distinct value. The row lock is held until
    the caller's transaction ends, which keeps numbers gapless when the surrounding
    work rolls back.
    """
    key = sequence_kind(kind)
    _insert_counter_if_missing(db, dealer_id=dealer_id, kind=key, start_after=0)
    allocated = db.execute(
        update(SequenceCounter)
        .where(SequenceCounter.dealer_id == dealer_id, SequenceCounter.kind == key)
        .values(last_value=SequenceCounter.last_value + 1, updated_at=_now())
        .returning(SequenceCounter.last_value)
    ).scalar_one()
    return int(allocated)


def initialize_counter(db: Session, *, dealer_id: int, kind: str | DocumentType, start_number: int) -> None:
    """Seed a counter so the next allocation returns ``start_number``. Existing counters are left alone."""
    if start_number < 1:
        raise ValueError('Start number must be at least 1')
    _insert_counter_if_missing(db, dealer_id=dealer_id, kind=sequence_kind(kind), start_after=start_number - 1)


def peek_last_number(db: Session, *, dealer_id: int, kind: str | DocumentType) -> int:
    value = db.execute(
        select(SequenceCounter.last_value).where(
            SequenceCounter.dealer_id == dealer_id,
            SequenceCounter.kind == sequence_kind(kind),
        )
    ).scalar_one_or_none()
    return int(value or 0)


def document_prefix(doc_type: DocumentType) -> str:
    return {
        DocumentType.DEPOSIT_RECEIPT: settings.deposit_receipt_prefix,
        DocumentType.INVOICE: settings.invoice_prefix,
        DocumentType.PAYMENT_RECEIPT: settings.payment_receipt_prefix,
        DocumentType.SELF_BILL_INVOICE: settings.self_bill_prefix,
    }[doc_type]


def format_number(prefix: str, number: int, *, width: int | None = None) -> str:
    pad = settings.document_number_width if width is None else width
    return f'{prefix}{str(number).zfill(pad)}'


def format_deal_reference(deal_number: int) -> str:
    return format_number(settings.deal_number_prefix, deal_number)


def allocate_document_number(db: Session, *, dealer_id: int, doc_type: DocumentType) -> tuple[int, str]:
    number = next_number(db, dealer_id=dealer_id, kind=doc_type)
    formatted = format_number(document_prefix(doc_type), number)
    logger.debug('Allocated %s %s for dealer %s', doc_type.value, formatted, dealer_id)
    return number, formatted
