"""Frozen document payloads, one variant per document type.

``snapshot_data`` on a SalesDocument is ``dump_snapshot(...)`` of one of these
models. The ``type`` field is the discriminator, so each variant only carries the
fields that document actually prints.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class SnapshotAddress(_Frozen):
    line1: str | None = None
    line2: str | None = None
    town: str | None = None
    county: str | None = None
    postcode: str | None = None


class SnapshotVehicle(_Frozen):
    reg_current: str | None = None
    vin: str | None = None
    make: str | None = None
    model: str | None = None
    derivative: str | None = None
    year: int | None = None
    mileage: int | None = None
    colour: str | None = None


class SnapshotParty(_Frozen):
    name: str | None = None
    company_name: str | None = None
    email: str | None = None
    phone: str | None = None
    vat_number: str | None = None
    address: SnapshotAddress | None = None


class SnapshotDealer(_Frozen):
    name: str
    company_name: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    vat_number: str | None = None
    company_number: str | None = None
    logo_url: str | None = None


class SnapshotBankDetails(_Frozen):
    account_name: str | None = None
    sort_code: str | None = None
    account_number: str | None = None
    iban: str | None = None


class SnapshotAddOn(_Frozen):
    name: str
    qty: int
    unit_price_net: Decimal
    vat_treatment: str
    vat_rate: Decimal


class SnapshotPayment(_Frozen):
    kind: str
    amount: Decimal
    method: str
    paid_at: datetime | None = None
    reference: str | None = None


class SnapshotPartExchange(_Frozen):
    vrm: str | None = None
    make: str | None = None
    model: str | None = None
    allowance: Decimal
    settlement: Decimal
    has_finance: bool = False
    finance_company_name: str | None = None
    settlement_in_writing: bool = False
    finance_settled: bool = False


class SnapshotFinance(_Frozen):
    provider: str | None = None
    finance_type: str | None = None
    amount_financed: Decimal | None = None
    reference: str | None = None


class SnapshotDelivery(_Frozen):
    amount: Decimal
    is_free: bool
    notes: str | None = None


class SnapshotRequest(_Frozen):
    title: str
    details: str | None = None
    request_type: str
    status: str


class SnapshotUser(_Frozen):
    name: str | None = None
    email: str | None = None


class SnapshotTotals(_Frozen):
    add_ons_net_total: Decimal
    add_ons_vat_total: Decimal
    delivery_total: Decimal
    subtotal: Decimal
    total_vat: Decimal
    grand_total: Decimal
    total_paid: Decimal
    deposit_paid: Decimal
    other_payments: Decimal
    finance_advance: Decimal
    part_exchange_net: Decimal
    balance_due: Decimal


class _DealSnapshot(_Frozen):
    deal_reference: str
    vehicle: SnapshotVehicle
    customer: SnapshotParty
    dealer: SnapshotDealer
    bank_details: SnapshotBankDetails | None = None
    is_vat_registered: bool
    sale_type: str
    buyer_use: str | None = None
    sale_channel: str | None = None
    vat_scheme: str
    vehicle_price_net: Decimal | None = None
    vehicle_vat_amount: Decimal | None = None
    vehicle_price_gross: Decimal
    add_ons: list[SnapshotAddOn] = Field(default_factory=list)
    delivery: SnapshotDelivery
    part_exchange: SnapshotPartExchange | None = None
    payments: list[SnapshotPayment] = Field(default_factory=list)
    requests: list[SnapshotRequest] = Field(default_factory=list)
    totals: SnapshotTotals
    terms_text: str = ''
    issued_by: SnapshotUser | None = None


class DepositReceiptSnapshot(_DealSnapshot):
    type: Literal['DEPOSIT_RECEIPT'] = 'DEPOSIT_RECEIPT'
    deposit: SnapshotPayment


class InvoiceSnapshot(_DealSnapshot):
    type: Literal['INVOICE'] = 'INVOICE'
    invoice_to: SnapshotParty | None = None
    deliver_to: SnapshotParty | None = None
    finance: SnapshotFinance | None = None


class PaymentReceiptSnapshot(_Frozen):
    type: Literal['PAYMENT_RECEIPT'] = 'PAYMENT_RECEIPT'
    deal_reference: str
    vehicle: SnapshotVehicle
    customer: SnapshotParty
    dealer: SnapshotDealer
    payment: SnapshotPayment
    invoice_number: str | None = None
    grand_total: Decimal
    total_paid: Decimal
    balance_before: Decimal
    balance_after: Decimal
    is_full_payment: bool
    issued_by: SnapshotUser | None = None


class SnapshotPurchase(_Frozen):
    purchase_date: date | None = None
    purchase_price_net: Decimal
    purchase_vat: Decimal
    purchase_price_gross: Decimal
    purchase_invoice_ref: str | None = None


class SelfBillInvoiceSnapshot(_Frozen):
    type: Literal['SELF_BILL_INVOICE'] = 'SELF_BILL_INVOICE'
    vehicle: SnapshotVehicle
    vat_scheme: str
    purchase: SnapshotPurchase
    supplier: SnapshotParty
    supplier_vat_number_missing: bool = False
    dealer: SnapshotDealer
    bank_details: SnapshotBankDetails | None = None
    subtotal: Decimal
    total_vat: Decimal
    grand_total: Decimal


DocumentSnapshot = Annotated[
    Union[DepositReceiptSnapshot, InvoiceSnapshot, PaymentReceiptSnapshot, SelfBillInvoiceSnapshot],
    Field(discriminator='type'),
]

_snapshot_adapter: TypeAdapter[DocumentSnapshot] = TypeAdapter(DocumentSnapshot)


def dump_snapshot(snapshot: BaseModel) -> dict:
    # JSON mode yields fresh plain containers, so nothing in the stored dict aliases live ORM state.
    return snapshot.model_dump(mode='json')


def load_snapshot(data: dict) -> DepositReceiptSnapshot | InvoiceSnapshot | PaymentReceiptSnapshot | SelfBillInvoiceSnapshot:
    return _snapshot_adapter.validate_python(data)
