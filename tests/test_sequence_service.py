from __future__ import annotations

import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor

from db_support import ACTOR, file_engine, memory_engine, seed, session_factory
from sqlalchemy import select

from dealdesk.models import DocumentType, SalesDocument
from dealdesk.services import document_service
from dealdesk.services.sequence_service import (
    DEAL_SEQUENCE,
    allocate_document_number,
    format_deal_reference,
    format_number,
    initialize_counter,
    next_number,
    peek_last_number,
)
from dealdesk.snapshots import SnapshotDealer


class SequenceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = memory_engine()
        self.Session = session_factory(self.engine)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_numbers_start_at_one_and_increment(self) -> None:
        with self.Session() as db:
            self.assertEqual(next_number(db, dealer_id=1, kind=DEAL_SEQUENCE), 1)
            self.assertEqual(next_number(db, dealer_id=1, kind=DEAL_SEQUENCE), 2)
            self.assertEqual(peek_last_number(db, dealer_id=1, kind=DEAL_SEQUENCE), 2)
            db.commit()

    def test_counters_are_separate_per_dealer_and_kind(self) -> None:
        with self.Session() as db:
            next_number(db, dealer_id=1, kind=DocumentType.INVOICE)
            next_number(db, dealer_id=1, kind=DocumentType.INVOICE)
            self.assertEqual(next_number(db, dealer_id=2, kind=DocumentType.INVOICE), 1)
            self.assertEqual(next_number(db, dealer_id=1, kind=DocumentType.DEPOSIT_RECEIPT), 1)
            self.assertEqual(next_number(db, dealer_id=1, kind='invoice'), 3)

    def test_initialize_counter_seeds_but_never_overwrites(self) -> None:
        with self.Session() as db:
            initialize_counter(db, dealer_id=1, kind=DocumentType.INVOICE, start_number=500)
            self.assertEqual(next_number(db, dealer_id=1, kind=DocumentType.INVOICE), 500)
            initialize_counter(db, dealer_id=1, kind=DocumentType.INVOICE, start_number=10)
            self.assertEqual(next_number(db, dealer_id=1, kind=DocumentType.INVOICE), 501)

    def test_rolled_back_allocation_is_released(self) -> None:
        with self.Session() as db:
            next_number(db, dealer_id=1, kind=DEAL_SEQUENCE)
            db.commit()
            next_number(db, dealer_id=1, kind=DEAL_SEQUENCE)
            db.rollback()
            self.assertEqual(next_number(db, dealer_id=1, kind=DEAL_SEQUENCE), 2)

    def test_formatting(self) -> None:
        self.assertEqual(format_number('INV', 42), 'INV00042')
        self.assertEqual(format_number('SB', 123456), 'SB123456')
        self.assertEqual(format_deal_reference(42), 'D00042')
        with self.Session() as db:
            number, formatted = allocate_document_number(db, dealer_id=3, doc_type=DocumentType.PAYMENT_RECEIPT)
            self.assertEqual((number, formatted), (1, 'PAY00001'))


class ConcurrentAllocationTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix='.sqlite3')
        os.close(handle)
        self.engine = file_engine(self.path)
        self.Session = session_factory(self.engine)

    def tearDown(self) -> None:
        self.engine.dispose()
        os.remove(self.path)

    def _allocate(self, _: int) -> int:
        with self.Session() as db:
            value = next_number(db, dealer_id=9, kind=DocumentType.INVOICE)
            db.commit()
            return value

    def test_hundred_concurrent_allocations_are_distinct_and_gapless(self) -> None:
        with ThreadPoolExecutor(max_workers=10) as pool:
            values = list(pool.map(self._allocate, range(100)))
        self.assertEqual(len(set(values)), 100)
        self.assertEqual(sorted(values), list(range(1, 101)))


class ConcurrentIssueTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix='.sqlite3')
        os.close(handle)
        self.engine = file_engine(self.path)
        self.Session = session_factory(self.engine)
        with self.Session() as db:
            self.dealer_id = seed(db).dealer.id
            db.commit()

    def tearDown(self) -> None:
        self.engine.dispose()
        os.remove(self.path)

    def _issue(self, _: int) -> str:
        with self.Session() as db:
            issued = document_service.issue_document(
                db,
                dealer_id=self.dealer_id,
                doc_type=DocumentType.PAYMENT_RECEIPT,
                snapshot=SnapshotDealer(name='Riverside Motors'),
                actor=ACTOR,
            )
            db.commit()
            return issued.document.document_number

    def test_hundred_concurrent_documents_get_distinct_gapless_numbers(self) -> None:
        with ThreadPoolExecutor(max_workers=10) as pool:
            numbers = list(pool.map(self._issue, range(100)))
        self.assertEqual(len(set(numbers)), 100)
        self.assertEqual(sorted(numbers), [format_number('PAY', value) for value in range(1, 101)])

        with self.Session() as db:
            stored = db.execute(
                select(SalesDocument.document_number).where(SalesDocument.dealer_id == self.dealer_id)
            ).scalars().all()
        self.assertEqual(sorted(stored), sorted(numbers))


if __name__ == '__main__':
    unittest.main()
