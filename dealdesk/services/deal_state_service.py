"""Deal status transitions and the documents issued alongside them.

Every transition loads the deal row for update, checks the move against
``DEAL_TRANSITIONS`` and that step's own preconditions, then writes the status,
its timestamp, any document, the audit entry and the outbox event in the caller's
transaction. Nothing here commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from dealdesk.errors import StateTransitionError, ValidationError
from dealdesk.models import Deal, DealStatus, DocumentType, PaymentKind, PaymentMethod, VatScheme, VehicleSaleStatus
from dealdesk.services import deal_service, document_service
from dealdesk.services.audit_service import Actor, log_deal_audit
from dealdesk.services.document_service import IssuedDocument
from dealdesk.services.notification_service import enqueue_notification
from dealdesk.services.records_provider import RecordsProvider
from dealdesk.services.vat_service import round_money

logger = logging.getLogger(__name__)

DEAL_TRANSITIONS = {
    DealStatus.DRAFT: {DealStatus.DEPOSIT_TAKEN, DealStatus.INVOICED, DealStatus.CANCELLED},
    DealStatus.DEPOSIT_TAKEN: {DealStatus.INVOICED, DealStatus.CANCELLED},
    DealStatus.INVOICED: {DealStatus.DELIVERED, DealStatus.CANCELLED, DealStatus.DEPOSIT_TAKEN, DealStatus.DRAFT},
    DealStatus.DELIVERED: {DealStatus.COMPLETED, DealStatus.CANCELLED},
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
}

# Leaving INVOICED backwards is only reachable by voiding the invoice.
_INVOICE_REVERSALS = {DealStatus.DEPOSIT_TAKEN, DealStatus.DRAFT}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def can_transition(current: DealStatus, target: DealStatus) -> bool:
    return target in DEAL_TRANSITIONS[current]


def ensure_transition(deal: Deal, target: DealStatus, *, via_invoice_void: bool = False) -> None:
    if not can_transition(deal.status, target):
        raise StateTransitionError(f'Deal cannot move from {deal.status.value} to {target.value}')
    if deal.status == DealStatus.INVOICED and target in _INVOICE_REVERSALS and not via_invoice_void:
        raise StateTransitionError('An invoiced deal only moves back by voiding its invoice')


def _apply(deal: Deal, target: DealStatus, actor: Actor) -> DealStatus:
    previous = deal.status
    deal.status = target
    deal.updated_by_user_id = actor.user_id
    deal.updated_at = _now()
    logger.info(
        'Deal %s moved %s -> %s for dealer %s',
        deal_service.deal_reference(deal),
        previous.value,
        target.value,
        deal.dealer_id,
    )
    return previous


def _notify(db: Session, deal: Deal, event: str, **extra) -> None:
    payload = {'deal_id': deal.id, 'deal_reference': deal_service.deal_reference(deal), 'status': deal.status.value}
    payload.update(extra)
    enqueue_notification(db, dealer_id=deal.dealer_id, event=event, payload=payload)


def _lock(db: Session, *, dealer_id: int, deal_id: int) -> Deal:
    return deal_service.get_deal(db, dealer_id=dealer_id, deal_id=deal_id, for_update=True)


def _require_customer(deal: Deal, provider: RecordsProvider, *, action: str) -> None:
    if deal.sold_to_contact_id is None:
        raise ValidationError(f'Customer is required before {action}')
    if provider.get_contact(dealer_id=deal.dealer_id, contact_id=deal.sold_to_contact_id) is None:
        raise ValidationError(f'Customer is required before {action}')


def take_deposit(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    amount: Decimal,
    method: PaymentMethod,
    reference: str | None = None,
    notes: str | None = None,
    paid_at: datetime | None = None,
) -> IssuedDocument:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    if deal.status not in {DealStatus.DRAFT, DealStatus.DEPOSIT_TAKEN}:
        raise StateTransitionError(f'Cannot take a deposit on a {deal.status.value.lower()} deal')
    _require_customer(deal, provider, action='taking a deposit')

    payment = deal_service.add_payment(
        db,
        deal,
        actor=actor,
        kind=PaymentKind.DEPOSIT,
        method=method,
        amount=amount,
        paid_at=paid_at,
        reference=reference,
        notes=notes,
        deposit_step=True,
    )
    if deal.status == DealStatus.DRAFT:
        ensure_transition(deal, DealStatus.DEPOSIT_TAKEN)
        _apply(deal, DealStatus.DEPOSIT_TAKEN, actor)
    deal.deposit_taken_at = deal.deposit_taken_at or payment.paid_at

    ctx = document_service.load_deal_context(db, provider, deal)
    issued = document_service.issue_document(
        db,
        dealer_id=dealer_id,
        doc_type=DocumentType.DEPOSIT_RECEIPT,
        snapshot=document_service.build_deposit_receipt(ctx, payment, actor),
        actor=actor,
        deal_id=deal.id,
        vehicle_id=deal.vehicle_id,
    )
    log_deal_audit(
        db,
        deal,
        actor,
        'DEPOSIT_TAKEN',
        document_id=issued.document.id,
        metadata={'amount': str(payment.amount), 'document_number': issued.document.document_number},
    )
    _notify(db, deal, 'deal.deposit_taken', document_number=issued.document.document_number, amount=str(payment.amount))
    db.flush()
    return issued


def validate_for_invoice(deal: Deal, provider: RecordsProvider) -> None:
    if deal.vat_scheme is None:
        raise ValidationError('VAT scheme is required before generating an invoice')
    if deal.vehicle_price_gross is None:
        raise ValidationError('Vehicle price is required before generating an invoice')
    if deal.vat_scheme == VatScheme.VAT_QUALIFYING:
        if deal.vehicle_price_net is None or deal.vehicle_vat_amount is None:
            raise ValidationError('VAT qualifying sales need the vehicle net price and VAT before invoicing')
        if round_money(deal.vehicle_price_net) + round_money(deal.vehicle_vat_amount) != round_money(deal.vehicle_price_gross):
            raise ValidationError('Vehicle net price and VAT do not add up to the gross price')
    _require_customer(deal, provider, action='generating an invoice')

    vehicle = provider.get_vehicle(dealer_id=deal.dealer_id, vehicle_id=deal.vehicle_id)
    if vehicle is None:
        raise ValidationError('Vehicle not found')
    if vehicle.purchase_price_net is None:
        raise ValidationError('Stock Invoice Value (SIV) is required before generating an invoice')
    if vehicle.purchase_date is None:
        raise ValidationError('Purchase date is required before generating an invoice')
    if vehicle.purchased_from_contact_id is None:
        raise ValidationError('Supplier is required before generating an invoice')


def _issue_invoice(db: Session, provider: RecordsProvider, deal: Deal, actor: Actor) -> IssuedDocument:
    ctx = document_service.load_deal_context(db, provider, deal)
    return document_service.issue_document(
        db,
        dealer_id=deal.dealer_id,
        doc_type=DocumentType.INVOICE,
        snapshot=document_service.build_invoice(ctx, actor),
        actor=actor,
        deal_id=deal.id,
        vehicle_id=deal.vehicle_id,
    )


def invoice_deal(db: Session, provider: RecordsProvider, *, dealer_id: int, deal_id: int, actor: Actor) -> IssuedDocument:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    ensure_transition(deal, DealStatus.INVOICED)
    if document_service.active_invoice(db, dealer_id=dealer_id, deal_id=deal.id) is not None:
        raise StateTransitionError('Invoice already exists; void or reissue it instead')
    validate_for_invoice(deal, provider)

    _apply(deal, DealStatus.INVOICED, actor)
    deal.invoiced_at = _now()
    db.flush()
    issued = _issue_invoice(db, provider, deal, actor)
    provider.set_vehicle_sale_status(
        dealer_id=dealer_id, vehicle_id=deal.vehicle_id, status=VehicleSaleStatus.SOLD_IN_PROGRESS
    )
    log_deal_audit(
        db,
        deal,
        actor,
        'DEAL_INVOICED',
        document_id=issued.document.id,
        metadata={'document_number': issued.document.document_number},
    )
    _notify(db, deal, 'deal.invoiced', document_number=issued.document.document_number)
    db.flush()
    return issued


def void_invoice(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    reason: str | None,
) -> Deal:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    if deal.status != DealStatus.INVOICED:
        raise StateTransitionError(f'Cannot void the invoice of a {deal.status.value.lower()} deal')
    invoice = document_service.active_invoice(db, dealer_id=dealer_id, deal_id=deal.id)
    if invoice is None:
        raise StateTransitionError('No active invoice found for this deal')
    document_service.mark_void(db, invoice, reason=reason, actor=actor)

    totals = deal_service.deal_totals(db, deal)
    target = DealStatus.DEPOSIT_TAKEN if totals.total_deposit_paid > 0 else DealStatus.DRAFT
    ensure_transition(deal, target, via_invoice_void=True)
    _apply(deal, target, actor)
    deal.invoiced_at = None
    provider.set_vehicle_sale_status(dealer_id=dealer_id, vehicle_id=deal.vehicle_id, status=VehicleSaleStatus.IN_DEAL)
    log_deal_audit(
        db,
        deal,
        actor,
        'INVOICE_VOIDED',
        document_id=invoice.id,
        metadata={'document_number': invoice.document_number, 'reason': invoice.void_reason},
    )
    _notify(db, deal, 'deal.invoice_voided', document_number=invoice.document_number)
    db.flush()
    return deal


def reissue_invoice(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    reason: str | None,
) -> IssuedDocument:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    if deal.status != DealStatus.INVOICED:
        raise StateTransitionError(f'Cannot reissue the invoice of a {deal.status.value.lower()} deal')
    previous = document_service.active_invoice(db, dealer_id=dealer_id, deal_id=deal.id)
    if previous is None:
        raise StateTransitionError('No active invoice found for this deal')
    validate_for_invoice(deal, provider)
    document_service.mark_void(db, previous, reason=reason, actor=actor)

    issued = _issue_invoice(db, provider, deal, actor)
    deal.invoiced_at = _now()
    deal.updated_by_user_id = actor.user_id
    deal.updated_at = _now()
    log_deal_audit(
        db,
        deal,
        actor,
        'INVOICE_REISSUED',
        document_id=issued.document.id,
        metadata={'document_number': issued.document.document_number, 'replaces': previous.document_number},
    )
    db.flush()
    return issued


def record_balance_payment(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    amount: Decimal,
    method: PaymentMethod,
    kind: PaymentKind = PaymentKind.BALANCE,
    reference: str | None = None,
    notes: str | None = None,
    paid_at: datetime | None = None,
) -> IssuedDocument:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    if kind == PaymentKind.DEPOSIT:
        raise ValidationError('Deposits are taken through the deposit step')
    deal_service.ensure_editable(deal)
    _require_customer(deal, provider, action='recording a payment')

    balance_before = deal_service.deal_totals(db, deal).balance_due
    payment = deal_service.add_payment(
        db,
        deal,
        actor=actor,
        kind=kind,
        method=method,
        amount=amount,
        paid_at=paid_at,
        reference=reference,
        notes=notes,
    )
    invoice = document_service.active_invoice(db, dealer_id=dealer_id, deal_id=deal.id)
    ctx = document_service.load_deal_context(db, provider, deal)
    issued = document_service.issue_document(
        db,
        dealer_id=dealer_id,
        doc_type=DocumentType.PAYMENT_RECEIPT,
        snapshot=document_service.build_payment_receipt(
            ctx,
            payment,
            actor,
            balance_before=balance_before,
            invoice_number=invoice.document_number if invoice else None,
        ),
        actor=actor,
        deal_id=deal.id,
        vehicle_id=deal.vehicle_id,
    )
    _notify(
        db,
        deal,
        'deal.payment_received',
        document_number=issued.document.document_number,
        amount=str(payment.amount),
        balance_due=str(ctx.totals.balance_due),
    )
    db.flush()
    return issued


def mark_delivered(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    delivered_at: datetime | None = None,
    mileage: int | None = None,
    notes: str | None = None,
) -> Deal:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    ensure_transition(deal, DealStatus.DELIVERED)
    if document_service.active_invoice(db, dealer_id=dealer_id, deal_id=deal.id) is None:
        raise StateTransitionError('An issued invoice is required before delivery')
    if mileage is not None and mileage < 0:
        raise ValidationError('Delivery mileage cannot be negative')

    _apply(deal, DealStatus.DELIVERED, actor)
    deal.delivered_at = delivered_at or _now()
    if mileage is not None:
        deal.delivery_mileage = mileage
    if notes and notes.strip():
        deal.delivery_notes = notes.strip()
    provider.set_vehicle_sale_status(dealer_id=dealer_id, vehicle_id=deal.vehicle_id, status=VehicleSaleStatus.DELIVERED)
    log_deal_audit(db, deal, actor, 'DEAL_DELIVERED', metadata={'mileage': mileage})
    _notify(db, deal, 'deal.delivered')
    db.flush()
    return deal


def validate_for_completion(deal: Deal) -> None:
    if not deal.px_has_finance:
        return
    if not deal.px_finance_company_name:
        raise ValidationError('Finance company is required for a part-exchange with finance')
    if not deal.px_settlement_in_writing:
        raise ValidationError('Settlement figure must be confirmed in writing before completion')
    if not deal.px_finance_settled:
        raise ValidationError('Part-exchange finance must be settled before completing the deal')


def complete(db: Session, provider: RecordsProvider, *, dealer_id: int, deal_id: int, actor: Actor) -> Deal:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    ensure_transition(deal, DealStatus.COMPLETED)
    validate_for_completion(deal)

    _apply(deal, DealStatus.COMPLETED, actor)
    deal.completed_at = _now()
    provider.set_vehicle_sale_status(dealer_id=dealer_id, vehicle_id=deal.vehicle_id, status=VehicleSaleStatus.COMPLETED)
    totals = deal_service.deal_totals(db, deal)
    log_deal_audit(db, deal, actor, 'DEAL_COMPLETED', metadata={'balance_due': str(totals.balance_due)})
    _notify(db, deal, 'deal.completed')
    db.flush()
    return deal


def cancel(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    deal_id: int,
    actor: Actor,
    reason: str | None,
) -> Deal:
    deal = _lock(db, dealer_id=dealer_id, deal_id=deal_id)
    ensure_transition(deal, DealStatus.CANCELLED)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise ValidationError('A reason is required to cancel a deal')

    previous = _apply(deal, DealStatus.CANCELLED, actor)
    deal.cancelled_at = _now()
    deal.cancel_reason = clean_reason
    cancelled_requests = deal_service.cancel_open_requests(db, deal)
    provider.set_vehicle_sale_status(dealer_id=dealer_id, vehicle_id=deal.vehicle_id, status=VehicleSaleStatus.AVAILABLE)
    log_deal_audit(
        db,
        deal,
        actor,
        'DEAL_CANCELLED',
        metadata={'reason': clean_reason, 'from_status': previous.value, 'requests_cancelled': cancelled_requests},
    )
    _notify(db, deal, 'deal.cancelled', reason=clean_reason)
    db.flush()
    return deal
