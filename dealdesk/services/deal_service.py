from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealdesk.config import settings
from dealdesk.errors import ComputationError, ConflictError, NotFoundError, StateTransitionError, ValidationError
from dealdesk.models import (
    BuyerUse,
    Deal,
    DealAddOn,
    DealPayment,
    DealRequest,
    DealStatus,
    FinanceType,
    PaymentKind,
    PaymentMethod,
    PaymentType,
    SaleChannel,
    SalesRequestStatus,
    SalesRequestType,
    SaleType,
    Vehicle,
    VatScheme,
    VatTreatment,
    VehicleSaleStatus,
)
from dealdesk.services.audit_service import Actor, log_deal_audit
from dealdesk.services.deal_totals_service import DealTotals, totals_for_rows
from dealdesk.services.records_provider import RecordsProvider
from dealdesk.services.sequence_service import DEAL_SEQUENCE, format_deal_reference, next_number
from dealdesk.services.vat_service import ZERO, gross_from_net, round_money, split_gross, treatment_for_scheme

LOCKED_STATUSES = {DealStatus.COMPLETED, DealStatus.CANCELLED}
INVOICED_STATUSES = {DealStatus.INVOICED, DealStatus.DELIVERED}
ACTIVE_STATUSES = {DealStatus.DRAFT, DealStatus.DEPOSIT_TAKEN, DealStatus.INVOICED, DealStatus.DELIVERED}

BUYER_TYPE_TO_USE = {
    'CONSUMER': BuyerUse.PERSONAL,
    'BUSINESS': BuyerUse.BUSINESS,
}

REQUEST_TRANSITIONS = {
    SalesRequestStatus.REQUESTED: {SalesRequestStatus.IN_PROGRESS, SalesRequestStatus.DONE, SalesRequestStatus.CANCELLED},
    SalesRequestStatus.IN_PROGRESS: {SalesRequestStatus.DONE, SalesRequestStatus.CANCELLED},
    SalesRequestStatus.DONE: set(),
    SalesRequestStatus.CANCELLED: set(),
}
OPEN_REQUEST_STATUSES = {SalesRequestStatus.REQUESTED, SalesRequestStatus.IN_PROGRESS}

_UNSET = object()

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _touch(deal: Deal, actor: Actor) -> None:
    deal.updated_by_user_id = actor.user_id
    deal.updated_at = _now()


def resolve_buyer_use(buyer_use: BuyerUse | None, buyer_type: str | None) -> BuyerUse | None:
    """Fold the legacy ``buyer_type`` input into ``buyer_use``.

    ``buyer_type`` is only read when given; it is never stored.
    """
    if buyer_type is None:
        return buyer_use
    key = buyer_type.strip().upper()
    if key not in BUYER_TYPE_TO_USE:
        raise ValidationError(f'Unknown buyer type: {buyer_type}')
    mapped = BUYER_TYPE_TO_USE[key]
    if buyer_use is not None and buyer_use != mapped:
        raise ValidationError(f'Buyer type {key} conflicts with buyer use {buyer_use.value}')
    return mapped


def classify_sale(
    sale_type: SaleType,
    buyer_use: BuyerUse | None,
    sale_channel: SaleChannel | None,
) -> tuple[BuyerUse | None, SaleChannel | None]:
    if sale_type != SaleType.RETAIL:
        return None, None
    return buyer_use or BuyerUse.PERSONAL, sale_channel or SaleChannel.IN_PERSON


def price_vehicle(
    vat_scheme: VatScheme,
    *,
    price_gross: Decimal | None,
    price_net: Decimal | None,
    vat_rate: Decimal,
) -> tuple[Decimal | None, Decimal | None, Decimal]:
    """Return ``(net, vat, gross)`` for the vehicle line.

    Margin and no-VAT deals carry only a gross price. A VAT qualifying deal may be
    priced from either side; when both are given they must agree.
    """
    if price_gross is None and price_net is None:
        raise ValidationError('Vehicle price is required')

    if vat_scheme != VatScheme.VAT_QUALIFYING:
        if price_gross is None:
            raise ValidationError('Vehicle gross price is required for margin and no-VAT sales')
        return None, None, split_gross(price_gross, treatment_for_scheme(vat_scheme), vat_rate).gross

    treatment = treatment_for_scheme(vat_scheme)
    if price_net is not None:
        breakdown = gross_from_net(price_net, treatment, vat_rate)
        if price_gross is not None and round_money(price_gross) != breakdown.gross:
            raise ValidationError(
                f'Vehicle net {breakdown.net} at {vat_rate} VAT gives {breakdown.gross}, not {round_money(price_gross)}'
            )
    else:
        breakdown = split_gross(price_gross, treatment, vat_rate)
    return breakdown.net, breakdown.vat, breakdown.gross


def ensure_editable(deal: Deal) -> None:
    if deal.status in LOCKED_STATUSES:
        raise StateTransitionError(f'Deal is {deal.status.value.lower()} and can no longer be changed')


def ensure_not_invoiced(deal: Deal, *, what: str) -> None:
    ensure_editable(deal)
    if deal.status == DealStatus.INVOICED:
        raise StateTransitionError(f'{what} is fixed by the issued invoice; void the invoice to change it')
    if deal.status in INVOICED_STATUSES:
        raise StateTransitionError(f'{what} can no longer be changed on a {deal.status.value.lower()} deal')


def deal_reference(deal: Deal) -> str:
    return format_deal_reference(deal.deal_number)


def get_deal(db: Session, *, dealer_id: int, deal_id: int, for_update: bool = False) -> Deal:
    query = select(Deal).where(Deal.id == deal_id, Deal.dealer_id == dealer_id)
    if for_update:
        query = query.with_for_update()
    deal = db.execute(query).scalar_one_or_none()
    if deal is None:
        raise NotFoundError('Deal not found')
    return deal


def list_payments(db: Session, *, deal_id: int) -> list[DealPayment]:
    return list(
        db.execute(
            select(DealPayment).where(DealPayment.deal_id == deal_id).order_by(DealPayment.paid_at.asc(), DealPayment.id.asc())
        ).scalars()
    )


def list_add_ons(db: Session, *, deal_id: int) -> list[DealAddOn]:
    return list(db.execute(select(DealAddOn).where(DealAddOn.deal_id == deal_id).order_by(DealAddOn.id.asc())).scalars())


def list_requests(db: Session, *, deal_id: int) -> list[DealRequest]:
    return list(db.execute(select(DealRequest).where(DealRequest.deal_id == deal_id).order_by(DealRequest.id.asc())).scalars())


def deal_totals(db: Session, deal: Deal) -> DealTotals:
    return totals_for_rows(
        deal,
        list_payments(db, deal_id=deal.id),
        list_add_ons(db, deal_id=deal.id),
        full_payment_tolerance=settings.full_payment_tolerance,
    )


def list_deals(
    db: Session,
    *,
    dealer_id: int,
    statuses: list[DealStatus] | None = None,
    vehicle_id: int | None = None,
    customer_id: int | None = None,
    sales_person_id: int | None = None,
    sale_type: SaleType | None = None,
    vat_scheme: VatScheme | None = None,
    vehicle_vrm: str | None = None,
    limit: int = 200,
) -> list[Deal]:
    conditions = [Deal.dealer_id == dealer_id]
    if statuses:
        conditions.append(Deal.status.in_(statuses))
    if vehicle_id:
        conditions.append(Deal.vehicle_id == vehicle_id)
    if customer_id:
        conditions.append(Deal.sold_to_contact_id == customer_id)
    if sales_person_id:
        conditions.append(Deal.sales_person_id == sales_person_id)
    if sale_type:
        conditions.append(Deal.sale_type == sale_type)
    if vat_scheme:
        conditions.append(Deal.vat_scheme == vat_scheme)

    query = select(Deal)
    vrm = ''.join((vehicle_vrm or '').split()).upper()
    if vrm:
        query = query.join(Vehicle, Vehicle.id == Deal.vehicle_id)
        conditions.append(Vehicle.dealer_id == dealer_id)
        conditions.append(Vehicle.reg_current.ilike(f'%{vrm}%'))

    query = query.where(and_(*conditions)).order_by(Deal.created_at.desc(), Deal.id.desc()).limit(limit)
    return list(db.execute(query).scalars())


def _active_deal_for_vehicle(db: Session, *, dealer_id: int, vehicle_id: int) -> Deal | None:
    return db.execute(
        select(Deal)
        .where(Deal.dealer_id == dealer_id, Deal.vehicle_id == vehicle_id, Deal.status.in_(ACTIVE_STATUSES))
        .limit(1)
    ).scalar_one_or_none()


def _ensure_contact(provider: RecordsProvider, *, dealer_id: int, contact_id: int | None, label: str) -> None:
    if contact_id is not None and provider.get_contact(dealer_id=dealer_id, contact_id=contact_id) is None:
        raise NotFoundError(f'{label} not found')


def _insert_deal(db: Session, *, dealer_id: int, fields: dict) -> Deal:
    # A taken deal number rolls back only the savepoint; the counter has already moved on.
    db.flush()
    attempts = settings.sequence_max_attempts
    for attempt in range(1, attempts + 1):
        deal_number = next_number(db, dealer_id=dealer_id, kind=DEAL_SEQUENCE)
        deal = Deal(deal_number=deal_number, **fields)
        try:
            with db.begin_nested():
                db.add(deal)
                db.flush()
        except IntegrityError:
            logger.warning(
                'Deal number %s already taken for dealer %s (attempt %s of %s)',
                format_deal_reference(deal_number),
                dealer_id,
                attempt,
                attempts,
            )
            continue
        return deal
    raise ConflictError(f'Could not allocate a deal number after {attempts} attempts')


def create_deal(
    db: Session,
    provider: RecordsProvider,
    *,
    dealer_id: int,
    actor: Actor,
    vehicle_id: int,
    vehicle_price_gross: Decimal | None = None,
    vehicle_price_net: Decimal | None = None,
    vat_scheme: VatScheme | None = None,
    sold_to_contact_id: int | None = None,
    invoice_to_contact_id: int | None = None,
    sale_type: SaleType = SaleType.RETAIL,
    buyer_use: BuyerUse | None = None,
    buyer_type: str | None = None,
    sale_channel: SaleChannel | None = None,
    payment_type: PaymentType = PaymentType.CASH,
    delivery_address: dict | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
) -> Deal:
    vehicle = provider.get_vehicle(dealer_id=dealer_id, vehicle_id=vehicle_id)
    if vehicle is None:
        raise NotFoundError('Vehicle not found')
    existing = _active_deal_for_vehicle(db, dealer_id=dealer_id, vehicle_id=vehicle_id)
    if existing is not None:
        raise ConflictError(f'Vehicle is already in active deal {deal_reference(existing)}')

    _ensure_contact(provider, dealer_id=dealer_id, contact_id=sold_to_contact_id, label='Customer')
    _ensure_contact(provider, dealer_id=dealer_id, contact_id=invoice_to_contact_id, label='Invoice contact')

    scheme = vat_scheme or vehicle.vat_scheme
    if scheme is None:
        raise ValidationError('VAT scheme is required')
    vat_rate = settings.default_vat_rate
    price_net, price_vat, price_gross = price_vehicle(
        scheme, price_gross=vehicle_price_gross, price_net=vehicle_price_net, vat_rate=vat_rate
    )
    resolved_use, resolved_channel = classify_sale(sale_type, resolve_buyer_use(buyer_use, buyer_type), sale_channel)

    fields = dict(
        dealer_id=dealer_id,
        vehicle_id=vehicle_id,
        status=DealStatus.DRAFT,
        sold_to_contact_id=sold_to_contact_id,
        invoice_to_contact_id=invoice_to_contact_id,
        delivery_address=delivery_address or None,
        sale_type=sale_type,
        buyer_use=resolved_use,
        sale_channel=resolved_channel,
        payment_type=payment_type,
        vat_scheme=scheme,
        vat_rate=vat_rate,
        vehicle_price_net=price_net,
        vehicle_vat_amount=price_vat,
        vehicle_price_gross=price_gross,
        purchase_price_net=vehicle.purchase_price_net,
        part_exchange_allowance=ZERO,
        part_exchange_settlement=ZERO,
        delivery_amount=ZERO,
        delivery_is_free=False,
        notes=_clean(notes),
        internal_notes=_clean(internal_notes),
        sales_person_id=actor.user_id,
        created_by_user_id=actor.user_id,
        updated_by_user_id=actor.user_id,
        created_at=_now(),
        updated_at=_now(),
    )
    deal = _insert_deal(db, dealer_id=dealer_id, fields=fields)

    provider.set_vehicle_sale_status(dealer_id=dealer_id, vehicle_id=vehicle_id, status=VehicleSaleStatus.IN_DEAL)
    log_deal_audit(db, deal, actor, 'DEAL_CREATED', metadata={'deal_reference': deal_reference(deal)})
    db.flush()
    return deal


def update_pricing(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    vehicle_price_gross: Decimal | None = None,
    vehicle_price_net: Decimal | None = None,
    vat_scheme: VatScheme | None = None,
) -> Deal:
    ensure_editable(deal)
    scheme = vat_scheme or deal.vat_scheme
    if vehicle_price_gross is None and vehicle_price_net is None:
        if scheme == VatScheme.VAT_QUALIFYING and deal.vat_scheme != VatScheme.VAT_QUALIFYING:
            vehicle_price_gross = deal.vehicle_price_gross
        elif scheme == VatScheme.VAT_QUALIFYING:
            vehicle_price_net = deal.vehicle_price_net
        else:
            vehicle_price_gross = deal.vehicle_price_gross
    price_net, price_vat, price_gross = price_vehicle(
        scheme, price_gross=vehicle_price_gross, price_net=vehicle_price_net, vat_rate=deal.vat_rate
    )
    deal.vat_scheme = scheme
    deal.vehicle_price_net = price_net
    deal.vehicle_vat_amount = price_vat
    deal.vehicle_price_gross = price_gross
    _touch(deal, actor)
    db.flush()
    return deal


def update_details(
    db: Session,
    provider: RecordsProvider,
    deal: Deal,
    *,
    actor: Actor,
    sold_to_contact_id=_UNSET,
    invoice_to_contact_id=_UNSET,
    sale_type: SaleType | None = None,
    buyer_use: BuyerUse | None = None,
    buyer_type: str | None = None,
    sale_channel: SaleChannel | None = None,
    payment_type: PaymentType | None = None,
    delivery_address=_UNSET,
    terms_snapshot_text=_UNSET,
    notes=_UNSET,
    internal_notes=_UNSET,
) -> Deal:
    ensure_editable(deal)
    if sold_to_contact_id is not _UNSET:
        _ensure_contact(provider, dealer_id=deal.dealer_id, contact_id=sold_to_contact_id, label='Customer')
        deal.sold_to_contact_id = sold_to_contact_id
    if invoice_to_contact_id is not _UNSET:
        _ensure_contact(provider, dealer_id=deal.dealer_id, contact_id=invoice_to_contact_id, label='Invoice contact')
        deal.invoice_to_contact_id = invoice_to_contact_id

    resolved_use = resolve_buyer_use(buyer_use, buyer_type)
    next_sale_type = sale_type or deal.sale_type
    deal.buyer_use, deal.sale_channel = classify_sale(
        next_sale_type,
        resolved_use or deal.buyer_use,
        sale_channel or deal.sale_channel,
    )
    deal.sale_type = next_sale_type
    if payment_type is not None:
        deal.payment_type = payment_type
    if delivery_address is not _UNSET:
        deal.delivery_address = delivery_address or None
    if terms_snapshot_text is not _UNSET:
        deal.terms_snapshot_text = _clean(terms_snapshot_text)
    if notes is not _UNSET:
        deal.notes = _clean(notes)
    if internal_notes is not _UNSET:
        deal.internal_notes = _clean(internal_notes)
    _touch(deal, actor)
    db.flush()
    return deal


def _positive_amount(amount: Decimal | None, *, field: str) -> Decimal:
    if amount is None:
        raise ComputationError(f'{field} is required')
    value = round_money(amount)
    if value <= 0:
        raise ComputationError(f'{field} must be greater than zero')
    return value


def add_payment(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    kind: PaymentKind,
    method: PaymentMethod,
    amount: Decimal,
    paid_at: datetime | None = None,
    reference: str | None = None,
    notes: str | None = None,
    deposit_step: bool = False,
) -> DealPayment:
    ensure_editable(deal)
    if kind == PaymentKind.DEPOSIT and not deposit_step:
        raise ValidationError('Deposits are taken through the deposit step')
    payment = DealPayment(
        deal_id=deal.id,
        kind=kind,
        method=method,
        amount=_positive_amount(amount, field='Payment amount'),
        paid_at=paid_at or _now(),
        reference=_clean(reference),
        notes=_clean(notes),
        is_refunded=False,
        created_by_user_id=actor.user_id,
        created_at=_now(),
    )
    db.add(payment)
    _touch(deal, actor)
    db.flush()
    log_deal_audit(
        db,
        deal,
        actor,
        'PAYMENT_RECORDED',
        metadata={'payment_id': payment.id, 'kind': kind.value, 'amount': str(payment.amount)},
    )
    return payment


def refund_payment(db: Session, deal: Deal, *, actor: Actor, payment_id: int) -> DealPayment:
    """Mark a payment refunded so it drops out of the totals.

    Status is left alone: a DEPOSIT_TAKEN deal whose only deposit is refunded
    stays DEPOSIT_TAKEN (the deposit receipt it issued still exists) and the
    refund is visible through the audit log and ``total_deposit_paid``.
    """
    ensure_editable(deal)
    payment = db.execute(
        select(DealPayment).where(DealPayment.id == payment_id, DealPayment.deal_id == deal.id)
    ).scalar_one_or_none()
    if payment is None:
        raise NotFoundError('Payment not found')
    if payment.is_refunded:
        raise StateTransitionError('Payment is already refunded')
    payment.is_refunded = True
    payment.refunded_at = _now()
    _touch(deal, actor)
    log_deal_audit(
        db,
        deal,
        actor,
        'PAYMENT_REFUNDED',
        metadata={'payment_id': payment.id, 'kind': payment.kind.value, 'amount': str(payment.amount)},
    )
    db.flush()
    return payment


def add_add_on(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    name: str,
    unit_price_net: Decimal,
    qty: int = 1,
    category: str | None = None,
    vat_treatment: VatTreatment = VatTreatment.STANDARD,
    vat_rate: Decimal | None = None,
    cost_price: Decimal | None = None,
) -> DealAddOn:
    ensure_editable(deal)
    clean_name = _clean(name)
    if not clean_name:
        raise ValidationError('Add-on name is required')
    if qty < 1:
        raise ComputationError('Add-on quantity must be at least 1')
    unit = round_money(unit_price_net) if unit_price_net is not None else None
    if unit is None or unit < 0:
        raise ComputationError('Add-on unit price cannot be negative')
    rate = deal.vat_rate if vat_rate is None else vat_rate
    if vat_treatment != VatTreatment.STANDARD:
        rate = Decimal('0')
    if rate < 0 or rate > 1:
        raise ComputationError('VAT rate must be between 0 and 1')

    add_on = DealAddOn(
        deal_id=deal.id,
        name=clean_name,
        category=_clean(category),
        qty=qty,
        unit_price_net=unit,
        vat_treatment=vat_treatment,
        vat_rate=rate,
        cost_price=round_money(cost_price) if cost_price is not None else None,
        created_at=_now(),
    )
    db.add(add_on)
    _touch(deal, actor)
    db.flush()
    return add_on


def remove_add_on(db: Session, deal: Deal, *, actor: Actor, add_on_id: int) -> None:
    ensure_editable(deal)
    add_on = db.execute(
        select(DealAddOn).where(DealAddOn.id == add_on_id, DealAddOn.deal_id == deal.id)
    ).scalar_one_or_none()
    if add_on is None:
        raise NotFoundError('Add-on not found')
    db.delete(add_on)
    _touch(deal, actor)
    db.flush()


def set_part_exchange(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    allowance: Decimal,
    settlement: Decimal = ZERO,
    vrm: str | None = None,
    make: str | None = None,
    model: str | None = None,
    has_finance: bool = False,
    finance_company_name: str | None = None,
    settlement_in_writing: bool = False,
    finance_settled: bool = False,
) -> Deal:
    ensure_editable(deal)
    allowance_value = round_money(allowance)
    settlement_value = round_money(settlement if settlement is not None else ZERO)
    if allowance_value < 0 or settlement_value < 0:
        raise ComputationError('Part-exchange allowance and settlement cannot be negative')
    if settlement_value > 0 and not has_finance:
        raise ValidationError('A settlement figure implies outstanding finance on the part-exchange')

    deal.part_exchange_allowance = allowance_value
    deal.part_exchange_settlement = settlement_value
    deal.px_vrm = ''.join((vrm or '').split()).upper() or None
    deal.px_make = _clean(make)
    deal.px_model = _clean(model)
    deal.px_has_finance = has_finance
    deal.px_finance_company_name = _clean(finance_company_name) if has_finance else None
    deal.px_settlement_in_writing = settlement_in_writing if has_finance else False
    deal.px_finance_settled = finance_settled if has_finance else False
    _touch(deal, actor)
    db.flush()
    return deal


def clear_part_exchange(db: Session, deal: Deal, *, actor: Actor) -> Deal:
    return set_part_exchange(db, deal, actor=actor, allowance=ZERO, settlement=ZERO)


def set_delivery(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    amount: Decimal = ZERO,
    is_free: bool = False,
    notes: str | None = None,
) -> Deal:
    ensure_not_invoiced(deal, what='Delivery')
    value = round_money(amount if amount is not None else ZERO)
    if value < 0:
        raise ComputationError('Delivery amount cannot be negative')
    deal.delivery_amount = value
    deal.delivery_is_free = is_free
    deal.delivery_notes = _clean(notes)
    _touch(deal, actor)
    db.flush()
    return deal


def set_finance(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    provider_name: str | None,
    finance_type: FinanceType | None = None,
    amount: Decimal | None = None,
    reference: str | None = None,
) -> Deal:
    ensure_not_invoiced(deal, what='Finance')
    financed = round_money(amount) if amount is not None else None
    if financed is not None and financed < 0:
        raise ComputationError('Amount financed cannot be negative')
    deal.finance_provider = _clean(provider_name)
    deal.finance_type = finance_type
    deal.finance_amount = financed
    deal.finance_reference = _clean(reference)
    if deal.finance_provider and deal.payment_type == PaymentType.CASH:
        deal.payment_type = PaymentType.FINANCE
    _touch(deal, actor)
    db.flush()
    return deal


def add_request(
    db: Session,
    deal: Deal,
    *,
    actor: Actor,
    title: str,
    details: str | None = None,
    request_type: SalesRequestType = SalesRequestType.OTHER,
    estimated_cost_net: Decimal | None = None,
) -> DealRequest:
    ensure_editable(deal)
    clean_title = _clean(title)
    if not clean_title:
        raise ValidationError('Request title is required')
    cost = round_money(estimated_cost_net) if estimated_cost_net is not None else None
    if cost is not None and cost < 0:
        raise ComputationError('Estimated cost cannot be negative')
    request = DealRequest(
        deal_id=deal.id,
        title=clean_title,
        details=_clean(details),
        request_type=request_type,
        status=SalesRequestStatus.REQUESTED,
        estimated_cost_net=cost,
        created_at=_now(),
    )
    db.add(request)
    _touch(deal, actor)
    db.flush()
    return request


def advance_request(db: Session, deal: Deal, *, actor: Actor, request_id: int, status: SalesRequestStatus) -> DealRequest:
    if deal.status == DealStatus.CANCELLED:
        raise StateTransitionError('Requests on a cancelled deal cannot change')
    request = db.execute(
        select(DealRequest).where(DealRequest.id == request_id, DealRequest.deal_id == deal.id)
    ).scalar_one_or_none()
    if request is None:
        raise NotFoundError('Request not found')
    if status not in REQUEST_TRANSITIONS[request.status]:
        raise StateTransitionError(f'Request cannot move from {request.status.value} to {status.value}')
    request.status = status
    if status == SalesRequestStatus.DONE:
        request.completed_at = _now()
    _touch(deal, actor)
    db.flush()
    return request


def cancel_open_requests(db: Session, deal: Deal) -> int:
    cancelled = 0
    for request in list_requests(db, deal_id=deal.id):
        if request.status in OPEN_REQUEST_STATUSES:
            request.status = SalesRequestStatus.CANCELLED
            cancelled += 1
    return cancelled


def _money(value: Decimal | None) -> str | None:
    return None if value is None else str(round_money(value))


def _enum(value) -> str | None:
    return None if value is None else value.value


def serialize_payment(row: DealPayment) -> dict:
    return {
        'id': row.id,
        'kind': row.kind.value,
        'method': row.method.value,
        'amount': _money(row.amount),
        'paid_at': row.paid_at,
        'reference': row.reference,
        'notes': row.notes,
        'is_refunded': row.is_refunded,
        'refunded_at': row.refunded_at,
    }


def serialize_add_on(row: DealAddOn) -> dict:
    return {
        'id': row.id,
        'name': row.name,
        'category': row.category,
        'qty': row.qty,
        'unit_price_net': _money(row.unit_price_net),
        'vat_treatment': row.vat_treatment.value,
        'vat_rate': str(row.vat_rate),
    }


def serialize_request(row: DealRequest) -> dict:
    return {
        'id': row.id,
        'title': row.title,
        'details': row.details,
        'request_type': row.request_type.value,
        'status': row.status.value,
        'estimated_cost_net': _money(row.estimated_cost_net),
        'completed_at': row.completed_at,
    }


def serialize_totals(totals: DealTotals) -> dict:
    return {
        key: value if isinstance(value, bool) else _money(value)
        for key, value in totals.as_dict().items()
    }


def serialize_deal(deal: Deal) -> dict:
    return {
        'id': deal.id,
        'deal_number': deal.deal_number,
        'deal_reference': deal_reference(deal),
        'status': deal.status.value,
        'vehicle_id': deal.vehicle_id,
        'sold_to_contact_id': deal.sold_to_contact_id,
        'invoice_to_contact_id': deal.invoice_to_contact_id,
        'sale_type': deal.sale_type.value,
        'buyer_use': _enum(deal.buyer_use),
        'sale_channel': _enum(deal.sale_channel),
        'payment_type': deal.payment_type.value,
        'vat_scheme': deal.vat_scheme.value,
        'vat_rate': str(deal.vat_rate),
        'vehicle_price_net': _money(deal.vehicle_price_net),
        'vehicle_vat_amount': _money(deal.vehicle_vat_amount),
        'vehicle_price_gross': _money(deal.vehicle_price_gross),
        'part_exchange': {
            'allowance': _money(deal.part_exchange_allowance),
            'settlement': _money(deal.part_exchange_settlement),
            'vrm': deal.px_vrm,
            'make': deal.px_make,
            'model': deal.px_model,
            'has_finance': deal.px_has_finance,
            'finance_company_name': deal.px_finance_company_name,
            'settlement_in_writing': deal.px_settlement_in_writing,
            'finance_settled': deal.px_finance_settled,
        },
        'px_finance_unsettled': bool(deal.px_has_finance and not deal.px_finance_settled),
        'delivery': {
            'amount': _money(deal.delivery_amount),
            'is_free': deal.delivery_is_free,
            'notes': deal.delivery_notes,
            'address': deal.delivery_address,
        },
        'finance': {
            'provider': deal.finance_provider,
            'finance_type': _enum(deal.finance_type),
            'amount': _money(deal.finance_amount),
            'reference': deal.finance_reference,
        },
        'terms_snapshot_text': deal.terms_snapshot_text,
        'notes': deal.notes,
        'internal_notes': deal.internal_notes,
        'deposit_taken_at': deal.deposit_taken_at,
        'invoiced_at': deal.invoiced_at,
        'delivered_at': deal.delivered_at,
        'delivery_mileage': deal.delivery_mileage,
        'completed_at': deal.completed_at,
        'cancelled_at': deal.cancelled_at,
        'cancel_reason': deal.cancel_reason,
        'sales_person_id': deal.sales_person_id,
        'created_at': deal.created_at,
        'updated_at': deal.updated_at,
    }


def deal_detail(db: Session, deal: Deal) -> dict:
    payments = list_payments(db, deal_id=deal.id)
    add_ons = list_add_ons(db, deal_id=deal.id)
    totals = totals_for_rows(deal, payments, add_ons, full_payment_tolerance=settings.full_payment_tolerance)
    payload = serialize_deal(deal)
    payload['payments'] = [serialize_payment(row) for row in payments]
    payload['add_ons'] = [serialize_add_on(row) for row in add_ons]
    payload['requests'] = [serialize_request(row) for row in list_requests(db, deal_id=deal.id)]
    payload['totals'] = serialize_totals(totals)
    return payload
