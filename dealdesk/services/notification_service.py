"""Outbox for side effects that must not break the deal workflow.

Events are written in the same transaction as the change that caused them and
delivered afterwards by ``dispatch_pending``. Delivery is at least once: a row is
only marked SENT after its sender returns, and one failing row never blocks the rest.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk.models import NotificationOutbox, NotificationStatus

logger = logging.getLogger(__name__)

NotificationSender = Callable[[str, dict], None]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def enqueue_notification(db: Session, *, dealer_id: int, event: str, payload: dict | None = None) -> NotificationOutbox:
    row = NotificationOutbox(
        dealer_id=dealer_id,
        event=event,
        payload=payload or {},
        status=NotificationStatus.PENDING,
        attempts=0,
    )
    db.add(row)
    return row


def dispatch_pending(db: Session, *, sender: NotificationSender, limit: int = 50, max_attempts: int = 10) -> dict:
    rows = db.execute(
        select(NotificationOutbox)
        .where(
            NotificationOutbox.status == NotificationStatus.PENDING,
            NotificationOutbox.attempts < max_attempts,
        )
        .order_by(NotificationOutbox.id.asc())
        .limit(limit)
    ).scalars().all()

    sent = 0
    failed = 0
    for row in rows:
        row.attempts += 1
        try:
            sender(row.event, dict(row.payload or {}))
        except Exception as exc:
            failed += 1
            row.last_error = str(exc)[:500]
            logger.exception('Notification %s (%s) failed on attempt %s', row.id, row.event, row.attempts)
            continue
        row.status = NotificationStatus.SENT
        row.sent_at = _now()
        row.last_error = None
        sent += 1
    db.flush()
    return {'sent': sent, 'failed': failed}
