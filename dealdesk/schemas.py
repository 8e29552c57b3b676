from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from dealdesk.models import (
    BuyerUse,
    FinanceType,
    PaymentKind,
    PaymentMethod,
    PaymentType,
    SaleChannel,
    SalesRequestStatus,
    SalesRequestType,
    SaleType,
    VatScheme,
    VatTreatment,
)


class DeliveryAddress(BaseModel):
    name: str | None = None
    line1: str | None = None
    line2: str | None = None
    town: str | None = None
    county: str | None = None
    postcode: str | None = None


class DealCreate(BaseModel):
    vehicle_id: int
    vehicle_price_gross: Decimal | None = None
    vehicle_price_net: Decimal | None = None
    vat_scheme: VatScheme | None = None
    sold_to_contact_id: int | None = None
    invoice_to_contact_id: int | None = None
    sale_type: SaleType = SaleType.RETAIL
    buyer_use: BuyerUse | None = None
    # Legacy input: CONSUMER or BUSINESS. Folded into buyer_use and never stored.
    buyer_type: str | None = None
    sale_channel: SaleChannel | None = None
    payment_type: PaymentType = PaymentType.CASH
    delivery_address: DeliveryAddress | None = None
    notes: str | None = None
    internal_notes: str | None = None


class DealDetailsUpdate(BaseModel):
    sold_to_contact_id: int | None = None
    invoice_to_contact_id: int | None = None
    sale_type: SaleType | None = None
    buyer_use: BuyerUse | None = None
    buyer_type: str | None = None
    sale_channel: SaleChannel | None = None
    payment_type: PaymentType | None = None
    delivery_address: DeliveryAddress | None = None
    terms_snapshot_text: str | None = None
    notes: str | None = None
    internal_notes: str | None = None


class PricingUpdate(BaseModel):
    vehicle_price_gross: Decimal | None = None
    vehicle_price_net: Decimal | None = None
    vat_scheme: VatScheme | None = None


class PaymentCreate(BaseModel):
    kind: PaymentKind = PaymentKind.OTHER
    method: PaymentMethod
    amount: Decimal
    paid_at: datetime | None = None
    reference: str | None = None
    notes: str | None = None


class DepositCreate(BaseModel):
    amount: Decimal
    method: PaymentMethod
    paid_at: datetime | None = None
    reference: str | None = None
    notes: str | None = None


class BalancePaymentCreate(BaseModel):
    amount: Decimal
    method: PaymentMethod
    kind: PaymentKind = PaymentKind.BALANCE
    paid_at: datetime | None = None
    reference: str | None = None
    notes: str | None = None


class AddOnCreate(BaseModel):
    name: str
    unit_price_net: Decimal
    qty: int = 1
    category: str | None = None
    vat_treatment: VatTreatment = VatTreatment.STANDARD
    vat_rate: Decimal | None = None
    cost_price: Decimal | None = None


class PartExchangeUpdate(BaseModel):
    allowance: Decimal
    settlement: Decimal = Decimal('0')
    vrm: str | None = None
    make: str | None = None
    model: str | None = None
    has_finance: bool = False
    finance_company_name: str | None = None
    settlement_in_writing: bool = False
    finance_settled: bool = False


class DeliveryUpdate(BaseModel):
    amount: Decimal = Decimal('0')
    is_free: bool = False
    notes: str | None = None


class FinanceUpdate(BaseModel):
    provider_name: str | None = None
    finance_type: FinanceType | None = None
    amount: Decimal | None = None
    reference: str | None = None


class RequestCreate(BaseModel):
    title: str
    details: str | None = None
    request_type: SalesRequestType = SalesRequestType.OTHER
    estimated_cost_net: Decimal | None = None


class RequestAdvance(BaseModel):
    status: SalesRequestStatus


class DeliverBody(BaseModel):
    delivered_at: datetime | None = None
    mileage: int | None = Field(default=None, ge=0)
    notes: str | None = None


class ReasonBody(BaseModel):
    reason: str


class SelfBillCreate(BaseModel):
    vehicle_id: int
