from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from dealdesk.errors import ComputationError
from dealdesk.models import Deal, DealAddOn, DealPayment, PaymentKind, VatScheme, VatTreatment
from dealdesk.services.vat_service import ZERO, line_vat, round_money, sum_money


@dataclass(frozen=True)
class PaymentInput:
    kind: PaymentKind
    amount: Decimal
    is_refunded: bool = False


@dataclass(frozen=True)
class AddOnInput:
    qty: int
    unit_price_net: Decimal
    vat_treatment: VatTreatment = VatTreatment.STANDARD
    vat_rate: Decimal = Decimal('0.20')


@dataclass(frozen=True)
class PricingInput:
    vat_scheme: VatScheme
    vehicle_price_gross: Decimal | None
    vehicle_price_net: Decimal | None = None
    delivery_amount: Decimal = ZERO
    delivery_is_free: bool = False
    part_exchange_allowance: Decimal = ZERO
    part_exchange_settlement: Decimal = ZERO


@dataclass(frozen=True)
class DealTotals:
    vehicle_price_gross: Decimal
    total_deposit_paid: Decimal
    total_paid: Decimal
    other_payments: Decimal
    finance_advance: Decimal
    add_ons_net_total: Decimal
    add_ons_vat_total: Decimal
    delivery_total: Decimal
    subtotal: Decimal
    total_vat: Decimal
    grand_total: Decimal
    part_exchange_net: Decimal
    balance_due: Decimal
    is_fully_paid: bool

    def as_dict(self) -> dict[str, Decimal | bool]:
        return {
            'vehicle_price_gross': self.vehicle_price_gross,
            'total_deposit_paid': self.total_deposit_paid,
            'total_paid': self.total_paid,
            'other_payments': self.other_payments,
            'finance_advance': self.finance_advance,
            'add_ons_net_total': self.add_ons_net_total,
            'add_ons_vat_total': self.add_ons_vat_total,
            'delivery_total': self.delivery_total,
            'subtotal': self.subtotal,
            'total_vat': self.total_vat,
            'grand_total': self.grand_total,
            'part_exchange_net': self.part_exchange_net,
            'balance_due': self.balance_due,
            'is_fully_paid': self.is_fully_paid,
        }


def _non_negative(value: Decimal | None, *, field: str) -> Decimal:
    amount = round_money(value if value is not None else ZERO)
    if amount < 0:
        raise ComputationError(f'{field} cannot be negative')
    return amount


def _add_on_net(line: AddOnInput) -> Decimal:
    if line.qty < 1:
        raise ComputationError('Add-on quantity must be at least 1')
    unit = _non_negative(line.unit_price_net, field='Add-on unit price')
    return round_money(unit * line.qty)


def compute_deal_totals(
    pricing: PricingInput,
    payments: list[PaymentInput],
    add_ons: list[AddOnInput],
    *,
    full_payment_tolerance: Decimal = Decimal('0.01'),
) -> DealTotals:
    if pricing.vehicle_price_gross is None:
        raise ComputationError('Vehicle price is required to compute deal totals')
    vehicle_gross = _non_negative(pricing.vehicle_price_gross, field='Vehicle price')

    live_payments = [payment for payment in payments if not payment.is_refunded]
    for payment in live_payments:
        if payment.amount is None or payment.amount <= 0:
            raise ComputationError('Payment amounts must be greater than zero')
    total_paid = sum_money(payment.amount for payment in live_payments)
    total_deposit_paid = sum_money(p.amount for p in live_payments if p.kind == PaymentKind.DEPOSIT)
    finance_advance = sum_money(p.amount for p in live_payments if p.kind == PaymentKind.FINANCE_ADVANCE)
    other_payments = total_paid - total_deposit_paid

    add_ons_net_total = ZERO
    add_ons_vat_total = ZERO
    for line in add_ons:
        net = _add_on_net(line)
        add_ons_net_total += net
        if line.vat_treatment == VatTreatment.STANDARD:
            add_ons_vat_total += line_vat(net, line.vat_treatment, line.vat_rate)

    delivery_total = ZERO if pricing.delivery_is_free else _non_negative(pricing.delivery_amount, field='Delivery amount')
    grand_total = vehicle_gross + add_ons_net_total + add_ons_vat_total + delivery_total

    if pricing.vat_scheme == VatScheme.VAT_QUALIFYING:
        vehicle_net = round_money(pricing.vehicle_price_net if pricing.vehicle_price_net is not None else vehicle_gross)
        vehicle_vat = vehicle_gross - vehicle_net
        subtotal = vehicle_net + add_ons_net_total
        total_vat = vehicle_vat + add_ons_vat_total
    else:
        subtotal = vehicle_gross + add_ons_net_total + add_ons_vat_total
        total_vat = ZERO

    allowance = _non_negative(pricing.part_exchange_allowance, field='Part-exchange allowance')
    settlement = _non_negative(pricing.part_exchange_settlement, field='Part-exchange settlement')
    part_exchange_net = allowance - settlement
    balance_due = grand_total - total_paid - part_exchange_net

    return DealTotals(
        vehicle_price_gross=vehicle_gross,
        total_deposit_paid=total_deposit_paid,
        total_paid=total_paid,
        other_payments=other_payments,
        finance_advance=finance_advance,
        add_ons_net_total=add_ons_net_total,
        add_ons_vat_total=add_ons_vat_total,
        delivery_total=delivery_total,
        subtotal=subtotal,
        total_vat=total_vat,
        grand_total=grand_total,
        part_exchange_net=part_exchange_net,
        balance_due=balance_due,
        is_fully_paid=balance_due <= full_payment_tolerance,
    )


def pricing_from_deal(deal: Deal) -> PricingInput:
    return PricingInput(
        vat_scheme=deal.vat_scheme,
        vehicle_price_gross=deal.vehicle_price_gross,
        vehicle_price_net=deal.vehicle_price_net,
        delivery_amount=deal.delivery_amount or ZERO,
        delivery_is_free=bool(deal.delivery_is_free),
        part_exchange_allowance=deal.part_exchange_allowance or ZERO,
        part_exchange_settlement=deal.part_exchange_settlement or ZERO,
    )


def totals_for_rows(
    deal: Deal,
    payments: list[DealPayment],
    add_ons: list[DealAddOn],
    *,
    full_payment_tolerance: Decimal = Decimal('0.01'),
) -> DealTotals:
    return compute_deal_totals(
        pricing_from_deal(deal),
        [PaymentInput(kind=row.kind, amount=row.amount, is_refunded=row.is_refunded) for row in payments],
        [
            AddOnInput(
                qty=row.qty,
                unit_price_net=row.unit_price_net,
                vat_treatment=row.vat_treatment,
                vat_rate=row.vat_rate,
            )
            for row in add_ons
        ],
        full_payment_tolerance=full_payment_tolerance,
    )
