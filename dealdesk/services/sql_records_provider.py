from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk.models import Contact, Dealer, Vehicle, VehicleSaleStatus
from dealdesk.services.records_provider import AddressFacts, ContactFacts, DealerFacts, VehicleFacts


class SqlRecordsProvider:
    """Reads vehicle, contact and dealer facts from the local reference tables."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_vehicle(self, *, dealer_id: int, vehicle_id: int) -> VehicleFacts | None:
        row = self.db.execute(
            select(Vehicle).where(Vehicle.id == vehicle_id, Vehicle.dealer_id == dealer_id)
        ).scalar_one_or_none()
        if row is None:
            return None
        return VehicleFacts(
            vehicle_id=row.id,
            reg_current=row.reg_current,
            vin=row.vin,
            make=row.make,
            model=row.model,
            derivative=row.derivative,
            year=row.year,
            mileage=row.mileage_current,
            colour=row.colour,
            vat_scheme=row.vat_scheme,
            sale_status=row.sale_status,
            purchase_price_net=row.purchase_price_net,
            purchase_vat=row.purchase_vat,
            purchase_date=row.purchase_date,
            purchased_from_contact_id=row.purchased_from_contact_id,
            purchase_invoice_ref=row.purchase_invoice_ref,
        )

    def get_contact(self, *, dealer_id: int, contact_id: int) -> ContactFacts | None:
        row = self.db.execute(
            select(Contact).where(Contact.id == contact_id, Contact.dealer_id == dealer_id)
        ).scalar_one_or_none()
        if row is None:
            return None
        has_address = any([row.address_line1, row.address_line2, row.town, row.county, row.postcode])
        return ContactFacts(
            contact_id=row.id,
            name=row.display_name,
            company_name=row.company_name,
            email=row.email,
            phone=row.phone,
            vat_number=row.vat_number,
            address=(
                AddressFacts(
                    line1=row.address_line1,
                    line2=row.address_line2,
                    town=row.town,
                    county=row.county,
                    postcode=row.postcode,
                )
                if has_address
                else None
            ),
        )

    def get_dealer(self, *, dealer_id: int) -> DealerFacts | None:
        row = self.db.execute(select(Dealer).where(Dealer.id == dealer_id, Dealer.active.is_(True))).scalar_one_or_none()
        if row is None:
            return None
        terms = {
            'consumerInPerson': row.terms_consumer_in_person,
            'consumerDistance': row.terms_consumer_distance,
            'businessInPerson': row.terms_business_in_person,
            'businessDistance': row.terms_business_distance,
        }
        return DealerFacts(
            dealer_id=row.id,
            name=row.name,
            company_name=row.company_name,
            address=row.company_address,
            phone=row.company_phone,
            email=row.company_email,
            vat_registered=row.vat_registered,
            vat_number=row.vat_number,
            company_number=row.company_number,
            logo_url=row.logo_url,
            bank_account_name=row.bank_account_name,
            bank_sort_code=row.bank_sort_code,
            bank_account_number=row.bank_account_number,
            bank_iban=row.bank_iban,
            terms={key: value for key, value in terms.items() if value},
        )

    def set_vehicle_sale_status(self, *, dealer_id: int, vehicle_id: int, status: VehicleSaleStatus) -> None:
        row = self.db.execute(
            select(Vehicle).where(Vehicle.id == vehicle_id, Vehicle.dealer_id == dealer_id)
        ).scalar_one_or_none()
        if row is None:
            raise ValueError('Vehicle not found')
        row.sale_status = status
        row.updated_at = datetime.now(tz=timezone.utc)
