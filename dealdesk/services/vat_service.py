from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from dealdesk.errors import ComputationError
from dealdesk.models import VatScheme, VatTreatment

PENNY = Decimal('0.01')
ZERO = Decimal('0.00')


@dataclass(frozen=True)
class VatBreakdown:
    net: Decimal
    vat: Decimal
    gross: Decimal


def round_money(value: Decimal | int | str) -> Decimal:
    """Round half up to whole pence. Every stored or derived money value passes through here."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ComputationError(f'Invalid monetary amount: {value!r}') from exc
    if not amount.is_finite():
        raise ComputationError(f'Invalid monetary amount: {value!r}')
    return amount.quantize(PENNY, rounding=ROUND_HALF_UP)


def _require_amount(value: Decimal | int | str | None, *, field: str) -> Decimal:
    if value is None:
        raise ComputationError(f'{field} is required')
    amount = round_money(value)
    if amount < 0:
        raise ComputationError(f'{field} cannot be negative')
    return amount


def _require_rate(rate: Decimal | int | str | None) -> Decimal:
    if rate is None:
        raise ComputationError('VAT rate is required')
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
    except (InvalidOperation, ValueError) as exc:
        raise ComputationError(f'Invalid VAT rate: {rate!r}') from exc
    if not value.is_finite() or value < 0 or value > 1:
        raise ComputationError('VAT rate must be between 0 and 1')
    return value


def treatment_for_scheme(scheme: VatScheme) -> VatTreatment:
    # Margin scheme VAT is never shown to the buyer, so the price splits like a no-VAT line.
    if scheme == VatScheme.VAT_QUALIFYING:
        return VatTreatment.STANDARD
    return VatTreatment.NO_VAT


def split_gross(gross: Decimal | int | str | None, treatment: VatTreatment, rate: Decimal | int | str | None) -> VatBreakdown:
    amount = _require_amount(gross, field='Gross amount')
    if treatment != VatTreatment.STANDARD:
        return VatBreakdown(net=amount, vat=ZERO, gross=amount)
    vat_rate = _require_rate(rate)
    net = round_money(amount / (Decimal('1') + vat_rate))
    # VAT is the remainder so net + vat always equals gross exactly.
    return VatBreakdown(net=net, vat=amount - net, gross=amount)


def gross_from_net(net: Decimal | int | str | None, treatment: VatTreatment, rate: Decimal | int | str | None) -> VatBreakdown:
    amount = _require_amount(net, field='Net amount')
    if treatment != VatTreatment.STANDARD:
        return VatBreakdown(net=amount, vat=ZERO, gross=amount)
    vat = round_money(amount * _require_rate(rate))
    return VatBreakdown(net=amount, vat=vat, gross=amount + vat)


def line_vat(net: Decimal | int | str | None, treatment: VatTreatment, rate: Decimal | int | str | None) -> Decimal:
    return gross_from_net(net, treatment, rate).vat


def sum_money(values) -> Decimal:
    return round_money(sum(values, ZERO))
