from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from printchain.errors import InvalidQuantity, UnknownSize
from printchain.models import AllocationMode, AuditLog, Job, SyncLog, SyncTrigger, TaskKind, WorkTask
from printchain.services.allocation_service import AllocationOverrides
from printchain.services.job_service import create_job, job_financials, reprice_job
from printchain.services.rate_card_service import lookup_rate_entry
from support import CUSTOMER_ID, SIZE_NAME, make_session_factory, seed_reference_data


class JobServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        self.db = self.Session()
        seed_reference_data(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def _count(self, model) -> int:
        return self.db.execute(select(func.count()).select_from(model)).scalar_one()

    def test_create_job_persists_financials_and_queues_cascade(self) -> None:
        job = create_job(
            self.db,
            customer_id=CUSTOMER_ID,
            size_name=SIZE_NAME,
            quantity=10000,
            mode=AllocationMode.INTERMEDIARY_WAIVES_PAPER_MARGIN,
            actor='tester',
        )
        self.db.commit()

        self.assertRegex(job.job_no, r'^J-\d{4}-000001$')
        self.assertEqual(job.allocation_mode, AllocationMode.INTERMEDIARY_WAIVES_PAPER_MARGIN)
        self.assertEqual(job.broker_margin_total, Decimal('86.80'))
        self.assertEqual(job.intermediary_paper_margin_total, Decimal('0'))
        self.assertIsNotNone(job.financials_computed_at)

        task = self.db.execute(select(WorkTask)).scalar_one()
        self.assertEqual(task.kind, TaskKind.GENERATE_CASCADE)
        self.assertEqual(task.payload, {'job_id': job.id})
        actions = self.db.execute(select(AuditLog.action)).scalars().all()
        self.assertIn('JOB_CREATED', actions)

    def test_job_numbers_increase(self) -> None:
        first = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=1000)
        second = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=2000)
        self.db.commit()
        self.assertTrue(first.job_no.endswith('000001'))
        self.assertTrue(second.job_no.endswith('000002'))

    def test_unknown_size_persists_nothing(self) -> None:
        with self.assertRaises(UnknownSize):
            create_job(self.db, customer_id=CUSTOMER_ID, size_name='11 x 17', quantity=1000)
        self.db.rollback()
        self.assertEqual(self._count(Job), 0)
        self.assertEqual(self._count(WorkTask), 0)

    def test_invalid_quantity_persists_nothing(self) -> None:
        with self.assertRaises(InvalidQuantity):
            create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=0)
        self.db.rollback()
        self.assertEqual(self._count(Job), 0)

    def test_unknown_customer_rejected(self) -> None:
        with self.assertRaises(ValueError):
            create_job(self.db, customer_id='bradford', size_name=SIZE_NAME, quantity=1000)

    def test_size_lookup_normalizes_whitespace(self) -> None:
        rate = lookup_rate_entry(self.db, '  7 1/4   x 16 3/8 ')
        self.assertEqual(rate.customer_cpm, Decimal('67.56'))

    def test_reprice_resets_fields_of_previous_mode(self) -> None:
        job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        self.db.commit()
        self.assertEqual(job.intermediary_paper_margin_total, Decimal('30.90'))

        reprice_job(self.db, job, actor='admin', mode=AllocationMode.MANUFACTURER_SUPPLIES_PAPER)
        self.db.commit()

        self.assertEqual(job.allocation_mode, AllocationMode.MANUFACTURER_SUPPLIES_PAPER)
        self.assertEqual(job.intermediary_paper_margin_total, Decimal('0'))
        self.assertEqual(job.manufacturer_total, Decimal('540.48'))
        fields = self.db.execute(
            select(SyncLog.field).where(SyncLog.trigger == SyncTrigger.JOB_OVERRIDE, SyncLog.purchase_order_id.is_(None))
        ).scalars().all()
        self.assertIn('manufacturer_total', fields)
        self.assertIn('paper_cost_total', fields)
        self.assertIn('intermediary_total_margin_total', fields)
        self.assertNotIn('customer_total', fields)

    def test_reprice_keeps_mode_when_only_price_changes(self) -> None:
        job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        reprice_job(self.db, job, actor='admin', overrides=AllocationOverrides(customer_cpm=Decimal('60.00')))
        self.db.commit()
        self.assertEqual(job.allocation_mode, AllocationMode.NORMAL)
        self.assertTrue(job.requires_approval)
        self.assertEqual(job.undercharge_amount, Decimal('75.60'))

    def test_financials_payload_is_serializable(self) -> None:
        job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        payload = job_financials(job)
        self.assertEqual(payload['allocation_mode'], 'NORMAL')
        self.assertEqual(Decimal(payload['customer_total']), Decimal('675.60'))


if __name__ == '__main__':
    unittest.main()
