from __future__ import annotations

from dataclasses import replace

from dealdesk.models import VehicleSaleStatus
from dealdesk.services.records_provider import ContactFacts, DealerFacts, VehicleFacts


class MemoryRecordsProvider:
    """Keeps vehicle, contact and dealer facts in dictionaries keyed by dealer."""

    def __init__(self) -> None:
        self.vehicles: dict[tuple[int, int], VehicleFacts] = {}
        self.contacts: dict[tuple[int, int], ContactFacts] = {}
        self.dealers: dict[int, DealerFacts] = {}

    def add_dealer(self, dealer: DealerFacts) -> DealerFacts:
        self.dealers[dealer.dealer_id] = dealer
        return dealer

    def add_contact(self, dealer_id: int, contact: ContactFacts) -> ContactFacts:
        self.contacts[(dealer_id, contact.contact_id)] = contact
        return contact

    def add_vehicle(self, dealer_id: int, vehicle: VehicleFacts) -> VehicleFacts:
        self.vehicles[(dealer_id, vehicle.vehicle_id)] = vehicle
        return vehicle

    def update_vehicle(self, dealer_id: int, vehicle_id: int, **changes) -> VehicleFacts:
        key = (dealer_id, vehicle_id)
        if key not in self.vehicles:
            raise ValueError('Vehicle not found')
        self.vehicles[key] = replace(self.vehicles[key], **changes)
        return self.vehicles[key]

    def get_vehicle(self, *, dealer_id: int, vehicle_id: int) -> VehicleFacts | None:
        return self.vehicles.get((dealer_id, vehicle_id))

    def get_contact(self, *, dealer_id: int, contact_id: int) -> ContactFacts | None:
        return self.contacts.get((dealer_id, contact_id))

    def get_dealer(self, *, dealer_id: int) -> DealerFacts | None:
        return self.dealers.get(dealer_id)

    def set_vehicle_sale_status(self, *, dealer_id: int, vehicle_id: int, status: VehicleSaleStatus) -> None:
        self.update_vehicle(dealer_id, vehicle_id, sale_status=status)
