"""Issuance of immutable sales documents.

A document is written once, already ISSUED, with a snapshot of everything it
prints. Later edits to the deal, the vehicle or the dealer never reach an issued
document; the only change it accepts afterwards is being voided.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealdesk.config import settings
from dealdesk.errors import ConflictError, NotFoundError, ShareLinkGoneError, StateTransitionError, ValidationError
from dealdesk.models import (
    BuyerUse,
    Deal,
    DealAddOn,
    DealPayment,
    DealRequest,
    DealStatus,
    DocumentStatus,
    DocumentType,
    SaleChannel,
    SaleType,
    SalesDocument,
    VatScheme,
)
from dealdesk.security.share_tokens import generate_share_token, hash_share_token, is_expired, share_expiry, token_matches
from dealdesk.services import deal_service
from dealdesk.services.audit_service import Actor, log_audit
from dealdesk.services.deal_totals_service import DealTotals, totals_for_rows
from dealdesk.services.records_provider import ContactFacts, DealerFacts, RecordsProvider, VehicleFacts
from dealdesk.services.sequence_service import allocate_document_number, format_deal_reference
from dealdesk.services.vat_service import ZERO, round_money
from dealdesk.snapshots import (
    DepositReceiptSnapshot,
    InvoiceSnapshot,
    PaymentReceiptSnapshot,
    SelfBillInvoiceSnapshot,
    SnapshotAddOn,
    SnapshotAddress,
    SnapshotBankDetails,
    SnapshotDealer,
    SnapshotDelivery,
    SnapshotFinance,
    SnapshotPartExchange,
    SnapshotParty,
    SnapshotPayment,
    SnapshotPurchase,
    SnapshotRequest,
    SnapshotTotals,
    SnapshotUser,
    SnapshotVehicle,
    dump_snapshot,
    load_snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_TERMS_KEY = 'consumerInPerson'


@dataclass(frozen=True)
class IssuedDocument:
    document: SalesDocument
    share_token: str


@dataclass(frozen=True)
class DealContext:
    """Everything a deal document prints, loaded once per issuance."""

    deal: Deal
    vehicle: VehicleFacts
    dealer: DealerFacts
    customer: ContactFacts | None
    invoice_to: ContactFacts | None
    payments: list[DealPayment]
    add_ons: list[DealAddOn]
    requests: list[DealRequest]
    totals: DealTotals


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def share_days(doc_type: DocumentType) -> int:
    return {
        DocumentType.DEPOSIT_RECEIPT: settings.deposit_receipt_share_days,
        DocumentType.INVOICE: settings.invoice_share_days,
        DocumentType.PAYMENT_RECEIPT: settings.payment_receipt_share_days,
        DocumentType.SELF_BILL_INVOICE: settings.self_bill_share_days,
    }[doc_type]


def terms_key(deal: Deal) -> str:
    audience = 'business' if deal.sale_type != SaleType.RETAIL or deal.buyer_use == BuyerUse.BUSINESS else 'consumer'
    channel = 'Distance' if deal.sale_channel == SaleChannel.DISTANCE else 'InPerson'
    return f'{audience}{channel}'


def terms_text_for(deal: Deal, dealer: DealerFacts) -> str:
    if deal.terms_snapshot_text:
        return deal.terms_snapshot_text
    terms = dealer.terms or {}
    return terms.get(terms_key(deal)) or terms.get(DEFAULT_TERMS_KEY) or ''


def vehicle_snapshot(vehicle: VehicleFacts, *, mileage: int | None = None) -> SnapshotVehicle:
    return SnapshotVehicle(
        reg_current=vehicle.reg_current,
        vin=vehicle.vin,
        make=vehicle.make,
        model=vehicle.model,
        derivative=vehicle.derivative,
        year=vehicle.year,
        mileage=mileage if mileage is not None else vehicle.mileage,
        colour=vehicle.colour,
    )


def party_snapshot(contact: ContactFacts | None) -> SnapshotParty | None:
    if contact is None:
        return None
    address = None
    if contact.address is not None:
        address = SnapshotAddress(
            line1=contact.address.line1,
            line2=contact.address.line2,
            town=contact.address.town,
            county=contact.address.county,
            postcode=contact.address.postcode,
        )
    return SnapshotParty(
        name=contact.name,
        company_name=contact.company_name,
        email=contact.email,
        phone=contact.phone,
        vat_number=contact.vat_number,
        address=address,
    )


def dealer_snapshot(dealer: DealerFacts) -> SnapshotDealer:
    return SnapshotDealer(
        name=dealer.name,
        company_name=dealer.company_name,
        address=dealer.address,
        phone=dealer.phone,
        email=dealer.email,
        vat_number=dealer.vat_number if dealer.vat_registered else None,
        company_number=dealer.company_number,
        logo_url=dealer.logo_url,
    )


def bank_snapshot(dealer: DealerFacts) -> SnapshotBankDetails | None:
    if not any([dealer.bank_account_name, dealer.bank_sort_code, dealer.bank_account_number, dealer.bank_iban]):
        return None
    return SnapshotBankDetails(
        account_name=dealer.bank_account_name,
        sort_code=dealer.bank_sort_code,
        account_number=dealer.bank_account_number,
        iban=dealer.bank_iban,
    )


def payment_snapshot(payment: DealPayment) -> SnapshotPayment:
    return SnapshotPayment(
        kind=payment.kind.value,
        amount=round_money(payment.amount),
        method=payment.method.value,
        paid_at=payment.paid_at,
        reference=payment.reference,
    )


def totals_snapshot(totals: DealTotals) -> SnapshotTotals:
    return SnapshotTotals(
        add_ons_net_total=totals.add_ons_net_total,
        add_ons_vat_total=totals.add_ons_vat_total,
        delivery_total=totals.delivery_total,
        subtotal=totals.subtotal,
        total_vat=totals.total_vat,
        grand_total=totals.grand_total,
        total_paid=totals.total_paid,
        deposit_paid=totals.total_deposit_paid,
        other_payments=totals.other_payments,
        finance_advance=totals.finance_advance,
        part_exchange_net=totals.part_exchange_net,
        balance_due=totals.balance_due,
    )


def _part_exchange_snapshot(deal: Deal) -> SnapshotPartExchange | None:
    if not deal.part_exchange_allowance and not deal.px_vrm:
        return None
    return SnapshotPartExchange(
        vrm=deal.px_vrm,
        make=deal.px_make,
        model=deal.px_model,
        allowance=round_money(deal.part_exchange_allowance or ZERO),
        settlement=round_money(deal.part_exchange_settlement or ZERO),
        has_finance=deal.px_has_finance,
        finance_company_name=deal.px_finance_company_name,
        settlement_in_writing=deal.px_settlement_in_writing,
        finance_settled=deal.px_finance_settled,
    )


def _issued_by(actor: Actor) -> SnapshotUser | None:
    if actor.name is None and actor.email is None:
        return None
    return SnapshotUser(name=actor.name, email=actor.email)


def _deal_fields(ctx: DealContext, actor: Actor) -> dict:
    deal = ctx.deal
    return {
        'deal_reference': format_deal_reference(deal.deal_number),
        'vehicle': vehicle_snapshot(ctx.vehicle, mileage=deal.delivery_mileage),
        'customer': party_snapshot(ctx.customer) or SnapshotParty(),
        'dealer': dealer_snapshot(ctx.dealer),
        'bank_details': bank_snapshot(ctx.dealer),
        'is_vat_registered': ctx.dealer.vat_registered,
        'sale_type': deal.sale_type.value,
        'buyer_use': deal.buyer_use.value if deal.buyer_use else None,
        'sale_channel': deal.sale_channel.value if deal.sale_channel else None,
        'vat_scheme': deal.vat_scheme.value,
        'vehicle_price_net': deal.vehicle_price_net,
        'vehicle_vat_amount': deal.vehicle_vat_amount,
        'vehicle_price_gross': ctx.totals.vehicle_price_gross,
        'add_ons': [
            SnapshotAddOn(
                name=row.name,
                qty=row.qty,
                unit_price_net=round_money(row.unit_price_net),
                vat_treatment=row.vat_treatment.value,
                vat_rate=row.vat_rate,
            )
            for row in ctx.add_ons
        ],
        'delivery': SnapshotDelivery(
            amount=ctx.totals.delivery_total,
            is_free=deal.delivery_is_free,
            notes=deal.delivery_notes,
        ),
        'part_exchange': _part_exchange_snapshot(deal),
        'payments': [payment_snapshot(row) for row in ctx.payments if not row.is_refunded],
        'requests': [
            SnapshotRequest(
                title=row.title,
                details=row.details,
                request_type=row.request_type.value,
                status=row.status.value,
            )
            for row in ctx.requests
        ],
        'totals': totals_snapshot(ctx.totals),
        'terms_text': terms_text_for(deal, ctx.dealer),
        'issued_by': _issued_by(actor),
    }


def load_deal_context(db: Session, provider: RecordsProvider, deal: Deal) -> DealContext:
    vehicle = provider.get_vehicle(dealer_id=deal.dealer_id, vehicle_id=deal.vehicle_id)
    if vehicle is None:
        raise NotFoundError('Vehicle not found')
    dealer = provider.get_dealer(dealer_id=deal.dealer_id)
    if dealer is None:
        raise NotFoundError('Dealer not found')
    customer = None
    if deal.sold_to_contact_id is not None:
        customer = provider.get_contact(dealer_id=deal.dealer_id, contact_id=deal.sold_to_contact_id)
    invoice_to = None
    if deal.invoice_to_contact_id is not None:
        invoice_to = provider.get_contact(dealer_id=deal.dealer_id, contact_id=deal.invoice_to_contact_id)

    payments = deal_service.list_payments(db, deal_id=deal.id)
    add_ons = deal_service.list_add_ons(db, deal_id=deal.id)
    return DealContext(
        deal=deal,
        vehicle=vehicle,
        dealer=dealer,
        customer=customer,
        invoice_to=invoice_to,
        payments=payments,
        add_ons=add_ons,
        requests=deal_service.list_requests(db, deal_id=deal.id),
        totals=totals_for_rows(deal, payments, add_ons, full_payment_tolerance=settings.full_payment_tolerance),
    )


def build_deposit_receipt(ctx: DealContext, deposit: DealPayment, actor: Actor) -> DepositReceiptSnapshot:
    return DepositReceiptSnapshot(deposit=payment_snapshot(deposit), **_deal_fields(ctx, actor))


def build_invoice(ctx: DealContext, actor: Actor) -> InvoiceSnapshot:
    deal = ctx.deal
    finance = None
    if deal.finance_provider:
        finance = SnapshotFinance(
            provider=deal.finance_provider,
            finance_type=deal.finance_type.value if deal.finance_type else None,
            amount_financed=deal.finance_amount,
            reference=deal.finance_reference,
        )
    deliver_to = None
    if deal.delivery_address:
        address = SnapshotAddress(**{key: deal.delivery_address.get(key) for key in SnapshotAddress.model_fields})
        deliver_to = SnapshotParty(name=deal.delivery_address.get('name'), address=address)
    return InvoiceSnapshot(
        invoice_to=party_snapshot(ctx.invoice_to),
        deliver_to=deliver_to,
        finance=finance,
        **_deal_fields(ctx, actor),
    )


def build_payment_receipt(
    ctx: DealContext,
    payment: DealPayment,
    actor: Actor,
    *,
    balance_before: Decimal,
    invoice_number: str | None,
) -> PaymentReceiptSnapshot:
    return PaymentReceiptSnapshot(
        deal_reference=format_deal_reference(ctx.deal.deal_number),
        vehicle=vehicle_snapshot(ctx.vehicle),
        customer=party_snapshot(ctx.customer) or SnapshotParty(),
        dealer=dealer_snapshot(ctx.dealer),
        payment=payment_snapshot(payment),
        invoice_number=invoice_number,
        grand_total=ctx.totals.grand_total,
        total_paid=ctx.totals.total_paid,
        balance_before=round_money(balance_before),
        balance_after=ctx.totals.balance_due,
        is_full_payment=ctx.totals.is_fully_paid,
        issued_by=_issued_by(actor),
    )


def issue_document(
    db: Session,
    *,
    dealer_id: int,
    doc_type: DocumentType,
    snapshot: BaseModel,
    actor: Actor,
    deal_id: int | None = None,
    vehicle_id: int | None = None,
) -> IssuedDocument:
    """Number and store an ISSUED document.

    Pending work is flushed first so the insert can run alone inside a SAVEPOINT;
    a number collision then rolls back just the insert and the next number is tried.
    """
    data = dump_snapshot(snapshot)
    db.flush()
    attempts = settings.sequence_max_attempts
    for attempt in range(1, attempts + 1):
        _, document_number = allocate_document_number(db, dealer_id=dealer_id, doc_type=doc_type)
        token, token_hash = generate_share_token()
        issued_at = _now()
        document = SalesDocument(
            dealer_id=dealer_id,
            deal_id=deal_id,
            vehicle_id=vehicle_id,
            doc_type=doc_type,
            document_number=document_number,
            status=DocumentStatus.ISSUED,
            snapshot_data=data,
            issued_at=issued_at,
            share_token_hash=token_hash,
            share_expires_at=share_expiry(share_days(doc_type), now=issued_at),
            created_by_user_id=actor.user_id,
            created_at=issued_at,
        )
        try:
            with db.begin_nested():
                db.add(document)
                db.flush()
        except IntegrityError:
            logger.warning(
                '%s number %s already taken for dealer %s (attempt %s of %s)',
                doc_type.value,
                document_number,
                dealer_id,
                attempt,
                attempts,
            )
            continue
        logger.info('Issued %s %s for dealer %s', doc_type.value, document_number, dealer_id)
        return IssuedDocument(document=document, share_token=token)
    raise ConflictError(f'Could not allocate a {doc_type.value} number after {attempts} attempts')


def get_document(db: Session, *, dealer_id: int, document_id: int) -> SalesDocument:
    document = db.execute(
        select(SalesDocument).where(SalesDocument.id == document_id, SalesDocument.dealer_id == dealer_id)
    ).scalar_one_or_none()
    if document is None:
        raise NotFoundError('Document not found')
    return document


def list_documents(
    db: Session,
    *,
    dealer_id: int,
    deal_id: int | None = None,
    vehicle_id: int | None = None,
    doc_type: DocumentType | None = None,
) -> list[SalesDocument]:
    query = select(SalesDocument).where(SalesDocument.dealer_id == dealer_id)
    if deal_id is not None:
        query = query.where(SalesDocument.deal_id == deal_id)
    if vehicle_id is not None:
        query = query.where(SalesDocument.vehicle_id == vehicle_id)
    if doc_type is not None:
        query = query.where(SalesDocument.doc_type == doc_type)
    return list(db.execute(query.order_by(SalesDocument.issued_at.desc(), SalesDocument.id.desc())).scalars())


def active_invoice(db: Session, *, dealer_id: int, deal_id: int) -> SalesDocument | None:
    return db.execute(
        select(SalesDocument)
        .where(
            SalesDocument.dealer_id == dealer_id,
            SalesDocument.deal_id == deal_id,
            SalesDocument.doc_type == DocumentType.INVOICE,
            SalesDocument.status == DocumentStatus.ISSUED,
        )
        .order_by(SalesDocument.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def mark_void(db: Session, document: SalesDocument, *, reason: str | None, actor: Actor) -> SalesDocument:
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise ValidationError('A reason is required to void a document')
    if document.status != DocumentStatus.ISSUED:
        raise StateTransitionError(f'Document {document.document_number} is {document.status.value.lower()} and cannot be voided')
    document.status = DocumentStatus.VOID
    document.voided_at = _now()
    document.voided_by_user_id = actor.user_id
    document.void_reason = clean_reason
    log_audit(
        db,
        dealer_id=document.dealer_id,
        actor_user_id=actor.user_id,
        action='DOCUMENT_VOIDED',
        deal_id=document.deal_id,
        document_id=document.id,
        ip=actor.ip,
        metadata={'document_number': document.document_number, 'reason': clean_reason},
    )
    db.flush()
    logger.info('Voided %s %s for dealer %s', document.doc_type.value, document.document_number, document.dealer_id)
    return document


def void_document(db: Session, *, dealer_id: int, document_id: int, reason: str | None, actor: Actor) -> SalesDocument:
    """Void any issued document.

    The invoice of an INVOICED deal is refused here: voiding it must also move the
    deal back, which ``deal_state_service.void_invoice`` does. Invoices of deals
    that have moved past or out of INVOICED are voided without touching the deal.
    """
    document = get_document(db, dealer_id=dealer_id, document_id=document_id)
    if document.doc_type == DocumentType.INVOICE and document.deal_id is not None:
        deal = db.get(Deal, document.deal_id)
        if deal is not None and deal.status == DealStatus.INVOICED:
            raise StateTransitionError('The invoice of an invoiced deal is voided through the deal so its status is reverted')
    return mark_void(db, document, reason=reason, actor=actor)


def renew_share_link(db: Session, *, dealer_id: int, document_id: int) -> IssuedDocument:
    document = get_document(db, dealer_id=dealer_id, document_id=document_id)
    if document.status != DocumentStatus.ISSUED:
        raise StateTransitionError('Only issued documents can be shared')
    token, token_hash = generate_share_token()
    document.share_token_hash = token_hash
    document.share_expires_at = share_expiry(share_days(document.doc_type))
    db.flush()
    return IssuedDocument(document=document, share_token=token)


def resolve_share_token(db: Session, token: str) -> SalesDocument:
    if not token:
        raise NotFoundError('Share link not found')
    document = db.execute(
        select(SalesDocument).where(SalesDocument.share_token_hash == hash_share_token(token))
    ).scalar_one_or_none()
    if document is None or not token_matches(token, document.share_token_hash):
        raise NotFoundError('Share link not found')
    if document.status == DocumentStatus.VOID:
        raise ShareLinkGoneError('This document has been voided')
    if is_expired(document.share_expires_at):
        raise ShareLinkGoneError('This share link has expired')
    return document


def issue_self_bill_invoice(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    vehicle_id: int,
    actor: Actor,
) -> IssuedDocument:
    vehicle = provider.get_vehicle(dealer_id=dealer_id, vehicle_id=vehicle_id)
    if vehicle is None:
        raise NotFoundError('Vehicle not found')
    if vehicle.purchase_price_net is None:
        raise ValidationError('Vehicle purchase price (SIV) is required for a self-billing invoice')
    if vehicle.vat_scheme is None:
        raise ValidationError('Vehicle VAT scheme is required for a self-billing invoice')
    if vehicle.purchased_from_contact_id is None:
        raise ValidationError('Vehicle supplier is required for a self-billing invoice')
    supplier = provider.get_contact(dealer_id=dealer_id, contact_id=vehicle.purchased_from_contact_id)
    if supplier is None:
        raise ValidationError('Vehicle supplier is required for a self-billing invoice')
    dealer = provider.get_dealer(dealer_id=dealer_id)
    if dealer is None:
        raise NotFoundError('Dealer not found')

    net = round_money(vehicle.purchase_price_net)
    if net < 0:
        raise ValidationError('Vehicle purchase price cannot be negative')
    vat = ZERO
    if vehicle.vat_scheme == VatScheme.VAT_QUALIFYING:
        if not supplier.vat_number:
            logger.warning(
                'Self-bill for vehicle %s: supplier %s has no VAT number on a VAT qualifying purchase',
                vehicle_id,
                supplier.contact_id,
            )
        vat = round_money(vehicle.purchase_vat) if vehicle.purchase_vat is not None else round_money(net * settings.default_vat_rate)

    for previous in list_documents(db, dealer_id=dealer_id, vehicle_id=vehicle_id, doc_type=DocumentType.SELF_BILL_INVOICE):
        if previous.status == DocumentStatus.ISSUED:
            mark_void(db, previous, reason='Superseded by a new self-billing invoice', actor=actor)

    snapshot = SelfBillInvoiceSnapshot(
        vehicle=vehicle_snapshot(vehicle),
        vat_scheme=vehicle.vat_scheme.value,
        purchase=SnapshotPurchase(
            purchase_date=vehicle.purchase_date,
            purchase_price_net=net,
            purchase_vat=vat,
            purchase_price_gross=net + vat,
            purchase_invoice_ref=vehicle.purchase_invoice_ref,
        ),
        supplier=party_snapshot(supplier),
        supplier_vat_number_missing=vehicle.vat_scheme == VatScheme.VAT_QUALIFYING and not supplier.vat_number,
        dealer=dealer_snapshot(dealer),
        bank_details=bank_snapshot(dealer),
        subtotal=net,
        total_vat=vat,
        grand_total=net + vat,
    )
    issued = issue_document(
        db,
        dealer_id=dealer_id,
        doc_type=DocumentType.SELF_BILL_INVOICE,
        snapshot=snapshot,
        actor=actor,
        vehicle_id=vehicle_id,
    )
    log_audit(
        db,
        dealer_id=dealer_id,
        actor_user_id=actor.user_id,
        action='SELF_BILL_ISSUED',
        document_id=issued.document.id,
        ip=actor.ip,
        metadata={'document_number': issued.document.document_number, 'vehicle_id': vehicle_id},
    )
    db.flush()
    return issued


def serialize_document(document: SalesDocument, *, include_snapshot: bool = True) -> dict:
    payload = {
        'id': document.id,
        'doc_type': document.doc_type.value,
        'document_number': document.document_number,
        'status': document.status.value,
        'deal_id': document.deal_id,
        'vehicle_id': document.vehicle_id,
        'issued_at': document.issued_at,
        'voided_at': document.voided_at,
        'void_reason': document.void_reason,
        'share_expires_at': document.share_expires_at,
    }
    if include_snapshot:
        payload['snapshot'] = load_snapshot(document.snapshot_data).model_dump(mode='json')
    return payload
