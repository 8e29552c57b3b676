from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

from dealdesk.models import VatScheme, VehicleSaleStatus


@dataclass(frozen=True)
class AddressFacts:
    line1: str | None = None
    line2: str | None = None
    town: str | None = None
    county: str | None = None
    postcode: str | None = None


@dataclass(frozen=True)
class ContactFacts:
    contact_id: int
    name: str
    company_name: str | None = None
    email: str | None = None
    phone: str | None = None
    vat_number: str | None = None
    address: AddressFacts | None = None


@dataclass(frozen=True)
class VehicleFacts:
    vehicle_id: int
    reg_current: str | None = None
    vin: str | None = None
    make: str | None = None
    model: str | None = None
    derivative: str | None = None
    year: int | None = None
    mileage: int | None = None
    colour: str | None = None
    vat_scheme: VatScheme | None = None
    sale_status: VehicleSaleStatus = VehicleSaleStatus.AVAILABLE
    purchase_price_net: Decimal | None = None
    purchase_vat: Decimal | None = None
    purchase_date: date | None = None
    purchased_from_contact_id: int | None = None
    purchase_invoice_ref: str | None = None


@dataclass(frozen=True)
class DealerFacts:
    dealer_id: int
    name: str
    company_name: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    vat_registered: bool = True
    vat_number: str | None = None
    company_number: str | None = None
    logo_url: str | None = None
    bank_account_name: str | None = None
    bank_sort_code: str | None = None
    bank_account_number: str | None = None
    bank_iban: str | None = None
    terms: dict[str, str] | None = None


class RecordsProvider(Protocol):
    def get_vehicle(self, *, dealer_id: int, vehicle_id: int) -> VehicleFacts | None: ...

    def get_contact(self, *, dealer_id: int, contact_id: int) -> ContactFacts | None: ...

    def get_dealer(self, *, dealer_id: int) -> DealerFacts | None: ...

    def set_vehicle_sale_status(self, *, dealer_id: int, vehicle_id: int, status: VehicleSaleStatus) -> None: ...
