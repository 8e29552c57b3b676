from __future__ import annotations

import unittest
from decimal import Decimal

from db_support import ACTOR, memory_engine, seed, session_factory
from sqlalchemy import select

from dealdesk.errors import StateTransitionError, ValidationError
from dealdesk.models import (
    AuditLog,
    DealStatus,
    DocumentStatus,
    DocumentType,
    NotificationOutbox,
    PaymentKind,
    PaymentMethod,
    SalesRequestStatus,
    Vehicle,
    VehicleSaleStatus,
)
from dealdesk.services import deal_service, deal_state_service, document_service
from dealdesk.services.sql_records_provider import SqlRecordsProvider
from dealdesk.snapshots import load_snapshot


class DealLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = memory_engine()
        self.db = session_factory(self.engine)()
        self.seeded = seed(self.db)
        self.provider = SqlRecordsProvider(self.db)
        self.dealer_id = self.seeded.dealer.id
        self.deal = deal_service.create_deal(
            self.db,
            self.provider,
            dealer_id=self.dealer_id,
            actor=ACTOR,
            vehicle_id=self.seeded.vehicle.id,
            vehicle_price_gross=Decimal('12000'),
            sold_to_contact_id=self.seeded.customer.id,
        )

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _call(self, operation, **kwargs):
        return operation(self.db, self.provider, dealer_id=self.dealer_id, deal_id=self.deal.id, actor=ACTOR, **kwargs)

    def _vehicle_status(self) -> VehicleSaleStatus:
        return self.db.get(Vehicle, self.seeded.vehicle.id).sale_status

    def _deposit(self, amount: str = '500'):
        return self._call(deal_state_service.take_deposit, amount=Decimal(amount), method=PaymentMethod.CARD)

    def test_full_lifecycle(self) -> None:
        deposit = self._deposit()
        self.assertEqual(self.deal.status, DealStatus.DEPOSIT_TAKEN)
        self.assertIsNotNone(self.deal.deposit_taken_at)
        self.assertEqual(deposit.document.document_number, 'DEP00001')

        invoice = self._call(deal_state_service.invoice_deal)
        self.assertEqual(self.deal.status, DealStatus.INVOICED)
        self.assertEqual(invoice.document.document_number, 'INV00001')
        self.assertEqual(self._vehicle_status(), VehicleSaleStatus.SOLD_IN_PROGRESS)
        snapshot = load_snapshot(invoice.document.snapshot_data)
        self.assertEqual(snapshot.totals.grand_total, Decimal('12000.00'))
        self.assertEqual(snapshot.totals.balance_due, Decimal('11500.00'))

        receipt = self._call(
            deal_state_service.record_balance_payment, amount=Decimal('11500'), method=PaymentMethod.BANK_TRANSFER
        )
        receipt_snapshot = load_snapshot(receipt.document.snapshot_data)
        self.assertEqual(receipt_snapshot.balance_before, Decimal('11500.00'))
        self.assertEqual(receipt_snapshot.balance_after, Decimal('0.00'))
        self.assertTrue(receipt_snapshot.is_full_payment)
        self.assertEqual(receipt_snapshot.invoice_number, 'INV00001')

        self._call(deal_state_service.mark_delivered, mileage=24010)
        self.assertEqual(self.deal.status, DealStatus.DELIVERED)
        self.assertEqual(self._vehicle_status(), VehicleSaleStatus.DELIVERED)

        self._call(deal_state_service.complete)
        self.assertEqual(self.deal.status, DealStatus.COMPLETED)
        self.assertIsNotNone(self.deal.completed_at)
        self.assertEqual(self._vehicle_status(), VehicleSaleStatus.COMPLETED)

        actions = self.db.execute(
            select(AuditLog.action).where(AuditLog.deal_id == self.deal.id).order_by(AuditLog.id)
        ).scalars().all()
        for action in ('DEAL_CREATED', 'DEPOSIT_TAKEN', 'DEAL_INVOICED', 'DEAL_DELIVERED', 'DEAL_COMPLETED'):
            self.assertIn(action, actions)
        events = self.db.execute(select(NotificationOutbox.event).order_by(NotificationOutbox.id)).scalars().all()
        self.assertEqual(
            events,
            ['deal.deposit_taken', 'deal.invoiced', 'deal.payment_received', 'deal.delivered', 'deal.completed'],
        )

    def test_invoice_straight_from_draft(self) -> None:
        self._call(deal_state_service.invoice_deal)
        self.assertEqual(self.deal.status, DealStatus.INVOICED)
        self.assertIsNotNone(self.deal.invoiced_at)

    def test_draft_cannot_jump_to_delivered_or_completed(self) -> None:
        with self.assertRaises(StateTransitionError):
            self._call(deal_state_service.mark_delivered)
        with self.assertRaises(StateTransitionError):
            self._call(deal_state_service.complete)
        self.assertEqual(self.deal.status, DealStatus.DRAFT)

    def test_completed_deal_accepts_no_transition(self) -> None:
        self._call(deal_state_service.invoice_deal)
        self._call(deal_state_service.mark_delivered)
        self._call(deal_state_service.complete)
        with self.assertRaises(StateTransitionError):
            self._call(deal_state_service.cancel, reason='Too late')
        with self.assertRaises(StateTransitionError):
            self._deposit()
        with self.assertRaises(StateTransitionError):
            self._call(deal_state_service.record_balance_payment, amount=Decimal('10'), method=PaymentMethod.CASH)

    def test_deposit_requires_customer(self) -> None:
        deal_service.update_details(self.db, self.provider, self.deal, actor=ACTOR, sold_to_contact_id=None)
        with self.assertRaises(ValidationError):
            self._deposit()
        self.assertEqual(self.deal.status, DealStatus.DRAFT)

    def test_second_invoice_is_rejected(self) -> None:
        self._call(deal_state_service.invoice_deal)
        with self.assertRaises(StateTransitionError):
            self._call(deal_state_service.invoice_deal)

    def test_invoice_requires_purchase_facts(self) -> None:
        vehicle = self.db.get(Vehicle, self.seeded.vehicle.id)
        vehicle.purchase_price_net = None
        self.db.flush()
        with self.assertRaises(ValidationError):
            self._call(deal_state_service.invoice_deal)
        self.assertEqual(self.deal.status, DealStatus.DRAFT)

    def test_void_invoice_reverts_to_deposit_taken(self) -> None:
        self._deposit()
        invoice = self._call(deal_state_service.invoice_deal)
        self._call(deal_state_service.void_invoice, reason='Wrong price')

        self.assertEqual(self.deal.status, DealStatus.DEPOSIT_TAKEN)
        self.assertIsNone(self.deal.invoiced_at)
        self.assertEqual(invoice.document.status, DocumentStatus.VOID)
        self.assertEqual(invoice.document.void_reason, 'Wrong price')
        self.assertEqual(self._vehicle_status(), VehicleSaleStatus.IN_DEAL)

        replacement = self._call(deal_state_service.invoice_deal)
        self.assertEqual(replacement.document.document_number, 'INV00002')

    def test_void_invoice_without_deposit_reverts_to_draft(self) -> None:
        self._call(deal_state_service.invoice_deal)
        self._call(deal_state_service.void_invoice, reason='Customer changed mind')
        self.assertEqual(self.deal.status, DealStatus.DRAFT)

    def test_void_invoice_requires_reason(self) -> None:
        self._call(deal_state_service.invoice_deal)
        with self.assertRaises(ValidationError):
            self._call(deal_state_service.void_invoice, reason='  ')
        self.assertEqual(self.deal.status, DealStatus.INVOICED)

    def test_invoiced_deal_only_moves_back_through_void(self) -> None:
        self._call(deal_state_service.invoice_deal)
        with self.assertRaises(StateTransitionError):
            deal_state_service.ensure_transition(self.deal, DealStatus.DRAFT)
        deal_state_service.ensure_transition(self.deal, DealStatus.DRAFT, via_invoice_void=True)

    def test_reissue_invoice_voids_previous_and_issues_new_number(self) -> None:
        first = self._call(deal_state_service.invoice_deal)
        deal_service.add_add_on(self.db, self.deal, actor=ACTOR, name='Tow bar', unit_price_net=Decimal('300'))
        second = self._call(deal_state_service.reissue_invoice, reason='Added tow bar')

        self.assertEqual(first.document.status, DocumentStatus.VOID)
        self.assertEqual(second.document.status, DocumentStatus.ISSUED)
        self.assertEqual(second.document.document_number, 'INV00002')
        self.assertEqual(self.deal.status, DealStatus.INVOICED)
        self.assertEqual(load_snapshot(second.document.snapshot_data).totals.grand_total, Decimal('12360.00'))
        self.assertEqual(load_snapshot(first.document.snapshot_data).totals.grand_total, Decimal('12000.00'))

    def test_balance_payment_rejects_deposit_kind(self) -> None:
        with self.assertRaises(ValidationError):
            self._call(
                deal_state_service.record_balance_payment,
                amount=Decimal('100'),
                method=PaymentMethod.CASH,
                kind=PaymentKind.DEPOSIT,
            )

    def test_part_payment_receipt_without_invoice(self) -> None:
        receipt = self._call(
            deal_state_service.record_balance_payment, amount=Decimal('2000'), method=PaymentMethod.CASH
        )
        snapshot = load_snapshot(receipt.document.snapshot_data)
        self.assertIsNone(snapshot.invoice_number)
        self.assertEqual(snapshot.balance_before, Decimal('12000.00'))
        self.assertEqual(snapshot.balance_after, Decimal('10000.00'))
        self.assertFalse(snapshot.is_full_payment)

    def test_delivery_mileage_cannot_be_negative(self) -> None:
        self._call(deal_state_service.invoice_deal)
        with self.assertRaises(ValidationError):
            self._call(deal_state_service.mark_delivered, mileage=-1)

    def test_completion_checks_part_exchange_finance(self) -> None:
        deal_service.set_part_exchange(
            self.db,
            self.deal,
            actor=ACTOR,
            allowance=Decimal('3000'),
            settlement=Decimal('1000'),
            has_finance=True,
            finance_company_name='Northern Finance',
        )
        self._call(deal_state_service.invoice_deal)
        self._call(deal_state_service.mark_delivered)
        with self.assertRaises(ValidationError):
            self._call(deal_state_service.complete)

        deal_service.set_part_exchange(
            self.db,
            self.deal,
            actor=ACTOR,
            allowance=Decimal('3000'),
            settlement=Decimal('1000'),
            has_finance=True,
            finance_company_name='Northern Finance',
            settlement_in_writing=True,
            finance_settled=True,
        )
        self._call(deal_state_service.complete)
        self.assertEqual(self.deal.status, DealStatus.COMPLETED)

    def test_cancel_cancels_open_requests_and_releases_vehicle(self) -> None:
        open_request = deal_service.add_request(self.db, self.deal, actor=ACTOR, title='Valet')
        done_request = deal_service.add_request(self.db, self.deal, actor=ACTOR, title='MOT')
        deal_service.advance_request(
            self.db, self.deal, actor=ACTOR, request_id=done_request.id, status=SalesRequestStatus.DONE
        )
        self._deposit()

        self._call(deal_state_service.cancel, reason='Finance declined')
        self.assertEqual(self.deal.status, DealStatus.CANCELLED)
        self.assertEqual(self.deal.cancel_reason, 'Finance declined')
        self.assertEqual(open_request.status, SalesRequestStatus.CANCELLED)
        self.assertEqual(done_request.status, SalesRequestStatus.DONE)
        self.assertEqual(self._vehicle_status(), VehicleSaleStatus.AVAILABLE)
        with self.assertRaises(StateTransitionError):
            deal_service.advance_request(
                self.db, self.deal, actor=ACTOR, request_id=open_request.id, status=SalesRequestStatus.DONE
            )

    def test_cancel_requires_reason(self) -> None:
        with self.assertRaises(ValidationError):
            self._call(deal_state_service.cancel, reason=None)

    def test_cancelled_deal_keeps_its_documents(self) -> None:
        deposit = self._deposit()
        self._call(deal_state_service.cancel, reason='Changed mind')
        documents = document_service.list_documents(self.db, dealer_id=self.dealer_id, deal_id=self.deal.id)
        self.assertEqual([doc.id for doc in documents], [deposit.document.id])
        self.assertEqual(documents[0].status, DocumentStatus.ISSUED)
        self.assertEqual(documents[0].doc_type, DocumentType.DEPOSIT_RECEIPT)


if __name__ == '__main__':
    unittest.main()
