from __future__ import annotations

import unittest
from decimal import Decimal

from dealdesk.errors import ComputationError
from dealdesk.models import VatScheme, VatTreatment
from dealdesk.services.vat_service import (
    gross_from_net,
    line_vat,
    round_money,
    split_gross,
    sum_money,
    treatment_for_scheme,
)

RATE = Decimal('0.20')


class VatServiceTests(unittest.TestCase):
    def test_round_money_rounds_half_up(self) -> None:
        self.assertEqual(round_money(Decimal('10.005')), Decimal('10.01'))
        self.assertEqual(round_money(Decimal('10.004')), Decimal('10.00'))
        self.assertEqual(round_money('2.675'), Decimal('2.68'))

    def test_round_money_rejects_garbage(self) -> None:
        with self.assertRaises(ComputationError):
            round_money('twelve')
        with self.assertRaises(ComputationError):
            round_money(Decimal('NaN'))

    def test_split_gross_standard(self) -> None:
        result = split_gross(Decimal('12000'), VatTreatment.STANDARD, RATE)
        self.assertEqual(result.net, Decimal('10000.00'))
        self.assertEqual(result.vat, Decimal('2000.00'))
        self.assertEqual(result.gross, Decimal('12000.00'))

    def test_split_gross_keeps_net_plus_vat_equal_to_gross(self) -> None:
        for raw in ['0.01', '0.05', '9.99', '99.95', '1234.57', '7777.77', '10000.01', '15999.99']:
            gross = Decimal(raw)
            result = split_gross(gross, VatTreatment.STANDARD, RATE)
            self.assertEqual(result.net + result.vat, result.gross, raw)
            self.assertEqual(result.gross, gross)

    def test_split_gross_non_standard_has_no_vat(self) -> None:
        for treatment in (VatTreatment.NO_VAT, VatTreatment.ZERO, VatTreatment.EXEMPT):
            result = split_gross(Decimal('500'), treatment, RATE)
            self.assertEqual(result.net, Decimal('500.00'))
            self.assertEqual(result.vat, Decimal('0.00'))

    def test_gross_from_net_standard(self) -> None:
        result = gross_from_net(Decimal('200'), VatTreatment.STANDARD, RATE)
        self.assertEqual(result.vat, Decimal('40.00'))
        self.assertEqual(result.gross, Decimal('240.00'))

    def test_line_vat_rounds_each_line(self) -> None:
        self.assertEqual(line_vat(Decimal('10.03'), VatTreatment.STANDARD, RATE), Decimal('2.01'))
        self.assertEqual(line_vat(Decimal('10.03'), VatTreatment.EXEMPT, RATE), Decimal('0.00'))

    def test_negative_or_missing_amounts_raise(self) -> None:
        with self.assertRaises(ComputationError):
            split_gross(Decimal('-1'), VatTreatment.STANDARD, RATE)
        with self.assertRaises(ComputationError):
            gross_from_net(None, VatTreatment.STANDARD, RATE)

    def test_rate_outside_unit_interval_raises(self) -> None:
        with self.assertRaises(ComputationError):
            split_gross(Decimal('100'), VatTreatment.STANDARD, Decimal('1.5'))
        with self.assertRaises(ComputationError):
            gross_from_net(Decimal('100'), VatTreatment.STANDARD, Decimal('-0.1'))

    def test_treatment_for_scheme(self) -> None:
        self.assertEqual(treatment_for_scheme(VatScheme.VAT_QUALIFYING), VatTreatment.STANDARD)
        self.assertEqual(treatment_for_scheme(VatScheme.MARGIN), VatTreatment.NO_VAT)
        self.assertEqual(treatment_for_scheme(VatScheme.NO_VAT), VatTreatment.NO_VAT)

    def test_sum_money(self) -> None:
        self.assertEqual(sum_money([Decimal('0.10'), Decimal('0.20')]), Decimal('0.30'))
        self.assertEqual(sum_money([]), Decimal('0.00'))


if __name__ == '__main__':
    unittest.main()
