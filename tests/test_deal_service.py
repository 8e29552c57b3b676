from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import patch

from db_support import ACTOR, memory_engine, seed, session_factory
from sqlalchemy import delete, select

from dealdesk.config import settings
from dealdesk.errors import ComputationError, ConflictError, NotFoundError, StateTransitionError, ValidationError
from dealdesk.models import (
    AuditLog,
    BuyerUse,
    DealStatus,
    DocumentStatus,
    PaymentKind,
    PaymentMethod,
    PaymentType,
    SaleChannel,
    SalesRequestStatus,
    SaleType,
    SequenceCounter,
    Vehicle,
    VatScheme,
    VatTreatment,
    VehicleSaleStatus,
)
from dealdesk.services import deal_service, deal_state_service
from dealdesk.services.sql_records_provider import SqlRecordsProvider


class DealServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = memory_engine()
        self.db = session_factory(self.engine)()
        self.seeded = seed(self.db)
        self.provider = SqlRecordsProvider(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _create(self, **overrides):
        values = {
            'dealer_id': self.seeded.dealer.id,
            'actor': ACTOR,
            'vehicle_id': self.seeded.vehicle.id,
            'vehicle_price_gross': Decimal('12000.00'),
            'sold_to_contact_id': self.seeded.customer.id,
        }
        values.update(overrides)
        return deal_service.create_deal(self.db, self.provider, **values)

    def test_create_deal_prices_vat_qualifying_vehicle_and_reserves_it(self) -> None:
        deal = self._create()

        self.assertEqual(deal.status, DealStatus.DRAFT)
        self.assertEqual(deal.deal_number, 1)
        self.assertEqual(deal_service.deal_reference(deal), 'D00001')
        self.assertEqual(deal.vehicle_price_net, Decimal('10000.00'))
        self.assertEqual(deal.vehicle_vat_amount, Decimal('2000.00'))
        self.assertEqual(deal.vehicle_price_gross, Decimal('12000.00'))
        self.assertEqual(deal.buyer_use, BuyerUse.PERSONAL)
        self.assertEqual(deal.sale_channel, SaleChannel.IN_PERSON)
        self.assertEqual(deal.purchase_price_net, Decimal('8000.00'))
        self.assertEqual(self.db.get(Vehicle, self.seeded.vehicle.id).sale_status, VehicleSaleStatus.IN_DEAL)
        actions = self.db.execute(select(AuditLog.action).where(AuditLog.deal_id == deal.id)).scalars().all()
        self.assertEqual(actions, ['DEAL_CREATED'])

    def test_create_deal_from_net_price(self) -> None:
        deal = self._create(vehicle_price_gross=None, vehicle_price_net=Decimal('10000'))
        self.assertEqual(deal.vehicle_price_gross, Decimal('12000.00'))

    def test_inconsistent_net_and_gross_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self._create(vehicle_price_gross=Decimal('12500'), vehicle_price_net=Decimal('10000'))

    def test_margin_deal_keeps_only_gross(self) -> None:
        deal = self._create(vat_scheme=VatScheme.MARGIN, vehicle_price_gross=Decimal('9500'))
        self.assertIsNone(deal.vehicle_price_net)
        self.assertIsNone(deal.vehicle_vat_amount)
        self.assertEqual(deal.vehicle_price_gross, Decimal('9500.00'))

    def test_margin_deal_requires_gross(self) -> None:
        with self.assertRaises(ValidationError):
            self._create(vat_scheme=VatScheme.MARGIN, vehicle_price_gross=None, vehicle_price_net=Decimal('9500'))

    def test_second_active_deal_for_vehicle_conflicts(self) -> None:
        self._create()
        with self.assertRaises(ConflictError):
            self._create()

    def test_vehicle_is_free_again_after_cancel(self) -> None:
        first = self._create()
        deal_state_service.cancel(
            self.db, self.provider, dealer_id=first.dealer_id, deal_id=first.id, actor=ACTOR, reason='Customer walked'
        )
        second = self._create()
        self.assertEqual(second.deal_number, 2)

    def _cancel_and_drop_counters(self, deal) -> None:
        deal_state_service.cancel(
            self.db, self.provider, dealer_id=deal.dealer_id, deal_id=deal.id, actor=ACTOR, reason='Imported'
        )
        self.db.execute(delete(SequenceCounter))
        self.db.flush()

    def test_taken_deal_number_moves_to_next_number(self) -> None:
        self._cancel_and_drop_counters(self._create())
        with self.assertLogs('dealdesk.services.deal_service', level='WARNING'):
            deal = self._create()
        self.assertEqual(deal.deal_number, 2)
        self.assertEqual(deal.status, DealStatus.DRAFT)

    def test_exhausted_deal_number_attempts_raise_conflict(self) -> None:
        self._cancel_and_drop_counters(self._create())
        with patch.object(settings, 'sequence_max_attempts', 1):
            with self.assertLogs('dealdesk.services.deal_service', level='WARNING'):
                with self.assertRaises(ConflictError):
                    self._create()

    def test_unknown_vehicle_and_customer(self) -> None:
        with self.assertRaises(NotFoundError):
            self._create(vehicle_id=999)
        with self.assertRaises(NotFoundError):
            self._create(sold_to_contact_id=999)

    def test_buyer_type_is_folded_into_buyer_use(self) -> None:
        deal = self._create(buyer_type='business')
        self.assertEqual(deal.buyer_use, BuyerUse.BUSINESS)
        self.assertFalse(hasattr(deal, 'buyer_type'))

    def test_conflicting_buyer_type_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            deal_service.resolve_buyer_use(BuyerUse.PERSONAL, 'BUSINESS')
        with self.assertRaises(ValidationError):
            deal_service.resolve_buyer_use(None, 'FLEET')
        self.assertEqual(deal_service.resolve_buyer_use(BuyerUse.BUSINESS, None), BuyerUse.BUSINESS)

    def test_trade_sale_clears_retail_classification(self) -> None:
        deal = self._create(sale_type=SaleType.TRADE, buyer_use=BuyerUse.BUSINESS, sale_channel=SaleChannel.DISTANCE)
        self.assertIsNone(deal.buyer_use)
        self.assertIsNone(deal.sale_channel)

    def test_update_pricing_switches_scheme(self) -> None:
        deal = self._create()
        deal_service.update_pricing(self.db, deal, actor=ACTOR, vat_scheme=VatScheme.MARGIN)
        self.assertEqual(deal.vat_scheme, VatScheme.MARGIN)
        self.assertIsNone(deal.vehicle_price_net)
        self.assertEqual(deal.vehicle_price_gross, Decimal('12000.00'))

        deal_service.update_pricing(self.db, deal, actor=ACTOR, vat_scheme=VatScheme.VAT_QUALIFYING)
        self.assertEqual(deal.vehicle_price_net, Decimal('10000.00'))
        self.assertEqual(deal.vehicle_vat_amount, Decimal('2000.00'))

    def test_update_details_only_touches_given_fields(self) -> None:
        deal = self._create(notes='Keep me')
        deal_service.update_details(
            self.db,
            self.provider,
            deal,
            actor=ACTOR,
            sale_channel=SaleChannel.DISTANCE,
            delivery_address={'line1': '9 Lane', 'postcode': 'LS1 1AA'},
        )
        self.assertEqual(deal.notes, 'Keep me')
        self.assertEqual(deal.sale_channel, SaleChannel.DISTANCE)
        self.assertEqual(deal.delivery_address['postcode'], 'LS1 1AA')

        deal_service.update_details(self.db, self.provider, deal, actor=ACTOR, notes=None)
        self.assertIsNone(deal.notes)

    def test_payments_add_ons_and_totals(self) -> None:
        deal = self._create()
        deal_service.add_payment(
            self.db,
            deal,
            actor=ACTOR,
            kind=PaymentKind.DEPOSIT,
            method=PaymentMethod.CARD,
            amount=Decimal('500'),
            deposit_step=True,
        )
        deal_service.add_add_on(self.db, deal, actor=ACTOR, name='Paint protection', unit_price_net=Decimal('200'))
        totals = deal_service.deal_totals(self.db, deal)
        self.assertEqual(totals.grand_total, Decimal('12240.00'))
        self.assertEqual(totals.balance_due, Decimal('11740.00'))

        detail = deal_service.deal_detail(self.db, deal)
        self.assertEqual(detail['totals']['balance_due'], '11740.00')
        self.assertEqual(detail['payments'][0]['amount'], '500.00')
        self.assertEqual(detail['add_ons'][0]['name'], 'Paint protection')

    def test_zero_rated_add_on_carries_no_vat(self) -> None:
        deal = self._create()
        add_on = deal_service.add_add_on(
            self.db,
            deal,
            actor=ACTOR,
            name='Road fund licence',
            unit_price_net=Decimal('180'),
            vat_treatment=VatTreatment.ZERO,
        )
        self.assertEqual(add_on.vat_rate, Decimal('0'))
        self.assertEqual(deal_service.deal_totals(self.db, deal).add_ons_vat_total, Decimal('0.00'))

    def test_invalid_amounts_raise_computation_errors(self) -> None:
        deal = self._create()
        with self.assertRaises(ComputationError):
            deal_service.add_payment(
                self.db, deal, actor=ACTOR, kind=PaymentKind.OTHER, method=PaymentMethod.CASH, amount=Decimal('0')
            )
        with self.assertRaises(ComputationError):
            deal_service.add_add_on(self.db, deal, actor=ACTOR, name='Mats', unit_price_net=Decimal('-1'))
        with self.assertRaises(ComputationError):
            deal_service.set_delivery(self.db, deal, actor=ACTOR, amount=Decimal('-5'))

    def test_refund_drops_payment_from_totals(self) -> None:
        deal = self._create()
        payment = deal_service.add_payment(
            self.db, deal, actor=ACTOR, kind=PaymentKind.OTHER, method=PaymentMethod.CASH, amount=Decimal('100')
        )
        deal_service.refund_payment(self.db, deal, actor=ACTOR, payment_id=payment.id)
        self.assertEqual(deal_service.deal_totals(self.db, deal).total_paid, Decimal('0.00'))
        with self.assertRaises(StateTransitionError):
            deal_service.refund_payment(self.db, deal, actor=ACTOR, payment_id=payment.id)

    def test_deposit_is_only_taken_through_the_deposit_step(self) -> None:
        deal = self._create()
        with self.assertRaises(ValidationError):
            deal_service.add_payment(
                self.db, deal, actor=ACTOR, kind=PaymentKind.DEPOSIT, method=PaymentMethod.CARD, amount=Decimal('500')
            )
        self.assertEqual(deal_service.list_payments(self.db, deal_id=deal.id), [])
        self.assertEqual(deal.status, DealStatus.DRAFT)

    def test_refunding_only_deposit_keeps_deposit_taken_status(self) -> None:
        deal = self._create()
        issued = deal_state_service.take_deposit(
            self.db,
            self.provider,
            dealer_id=deal.dealer_id,
            deal_id=deal.id,
            actor=ACTOR,
            amount=Decimal('500'),
            method=PaymentMethod.CARD,
        )
        payment = deal_service.list_payments(self.db, deal_id=deal.id)[0]
        deal_service.refund_payment(self.db, deal, actor=ACTOR, payment_id=payment.id)

        self.assertEqual(deal.status, DealStatus.DEPOSIT_TAKEN)
        self.assertEqual(deal_service.deal_totals(self.db, deal).total_deposit_paid, Decimal('0.00'))
        self.assertEqual(issued.document.status, DocumentStatus.ISSUED)

    def test_delivery_and_finance_are_fixed_once_invoiced(self) -> None:
        deal = self._create()
        deal_service.set_delivery(self.db, deal, actor=ACTOR, amount=Decimal('99'))
        deal_state_service.invoice_deal(self.db, self.provider, dealer_id=deal.dealer_id, deal_id=deal.id, actor=ACTOR)

        with self.assertRaises(StateTransitionError):
            deal_service.set_delivery(self.db, deal, actor=ACTOR, amount=Decimal('150'))
        with self.assertRaises(StateTransitionError):
            deal_service.set_finance(self.db, deal, actor=ACTOR, provider_name='Northern Finance', amount=Decimal('9000'))
        self.assertEqual(deal.delivery_amount, Decimal('99.00'))
        self.assertIsNone(deal.finance_provider)

        deal_state_service.void_invoice(
            self.db, self.provider, dealer_id=deal.dealer_id, deal_id=deal.id, actor=ACTOR, reason='Add delivery'
        )
        deal_service.set_delivery(self.db, deal, actor=ACTOR, amount=Decimal('150'))
        self.assertEqual(deal.delivery_amount, Decimal('150.00'))

    def test_part_exchange_settlement_requires_finance(self) -> None:
        deal = self._create()
        with self.assertRaises(ValidationError):
            deal_service.set_part_exchange(
                self.db, deal, actor=ACTOR, allowance=Decimal('3000'), settlement=Decimal('1000')
            )
        deal_service.set_part_exchange(
            self.db,
            deal,
            actor=ACTOR,
            allowance=Decimal('3000'),
            settlement=Decimal('1000'),
            vrm='xy 12 abc',
            has_finance=True,
            finance_company_name='Northern Finance',
        )
        self.assertEqual(deal.px_vrm, 'XY12ABC')
        self.assertEqual(deal_service.deal_totals(self.db, deal).part_exchange_net, Decimal('2000.00'))

        deal_service.clear_part_exchange(self.db, deal, actor=ACTOR)
        self.assertEqual(deal.part_exchange_allowance, Decimal('0.00'))
        self.assertFalse(deal.px_has_finance)

    def test_finance_switches_cash_deal_to_finance(self) -> None:
        deal = self._create()
        deal_service.set_finance(self.db, deal, actor=ACTOR, provider_name='Northern Finance', amount=Decimal('9000'))
        self.assertEqual(deal.payment_type, PaymentType.FINANCE)
        self.assertEqual(deal.finance_amount, Decimal('9000.00'))

    def test_request_transitions(self) -> None:
        deal = self._create()
        request = deal_service.add_request(self.db, deal, actor=ACTOR, title='Valet')
        deal_service.advance_request(
            self.db, deal, actor=ACTOR, request_id=request.id, status=SalesRequestStatus.IN_PROGRESS
        )
        deal_service.advance_request(self.db, deal, actor=ACTOR, request_id=request.id, status=SalesRequestStatus.DONE)
        self.assertIsNotNone(request.completed_at)
        with self.assertRaises(StateTransitionError):
            deal_service.advance_request(
                self.db, deal, actor=ACTOR, request_id=request.id, status=SalesRequestStatus.IN_PROGRESS
            )

    def test_cancelled_deal_is_locked(self) -> None:
        deal = self._create()
        deal_state_service.cancel(
            self.db, self.provider, dealer_id=deal.dealer_id, deal_id=deal.id, actor=ACTOR, reason='No longer wanted'
        )
        with self.assertRaises(StateTransitionError):
            deal_service.update_pricing(self.db, deal, actor=ACTOR, vehicle_price_gross=Decimal('11000'))
        with self.assertRaises(StateTransitionError):
            deal_service.add_add_on(self.db, deal, actor=ACTOR, name='Mats', unit_price_net=Decimal('40'))

    def test_deals_are_never_deleted(self) -> None:
        deal = self._create()
        self.db.delete(deal)
        with self.assertRaises(StateTransitionError):
            self.db.flush()

    def test_list_deals_filters(self) -> None:
        deal = self._create()
        dealer_id = self.seeded.dealer.id
        self.assertEqual([row.id for row in deal_service.list_deals(self.db, dealer_id=dealer_id)], [deal.id])
        self.assertEqual(len(deal_service.list_deals(self.db, dealer_id=dealer_id, vehicle_vrm='ab12 cde')), 1)
        self.assertEqual(len(deal_service.list_deals(self.db, dealer_id=dealer_id, vehicle_vrm='ZZ99')), 0)
        self.assertEqual(len(deal_service.list_deals(self.db, dealer_id=dealer_id, statuses=[DealStatus.INVOICED])), 0)
        self.assertEqual(len(deal_service.list_deals(self.db, dealer_id=dealer_id + 1)), 0)


if __name__ == '__main__':
    unittest.main()
