from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from printchain.config import settings
from printchain.errors import AlreadyInvoiced
from printchain.models import Invoice, InvoiceStatus
from printchain.services.cascade_service import ensure_cascade
from printchain.services.invoice_service import (
    generate_customer_invoice,
    generate_invoice_chain,
    generate_settlement_invoice,
    mark_invoice_paid,
    next_invoice_number,
)
from printchain.services.job_service import create_job
from support import CUSTOMER_ID, SIZE_NAME, make_session_factory, seed_reference_data


class InvoiceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        self.db = self.Session()
        seed_reference_data(self.db)
        self.job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_invoice_numbers_are_sequential_per_year(self) -> None:
        self.assertEqual(next_invoice_number(self.db, 2026), 'INV-2026-000001')
        first = generate_customer_invoice(self.db, self.job)
        self.db.commit()
        year = first.invoice_no.split('-')[1]
        self.assertTrue(first.invoice_no.endswith('000001'))
        self.assertEqual(next_invoice_number(self.db, int(year)), f'INV-{year}-000002')

    def test_customer_invoice_bills_job_total(self) -> None:
        invoice = generate_customer_invoice(self.db, self.job)
        self.assertEqual(invoice.from_company_id, settings.broker_company_id)
        self.assertEqual(invoice.to_company_id, CUSTOMER_ID)
        self.assertEqual(invoice.amount, Decimal('675.60'))
        self.assertEqual(invoice.status, InvoiceStatus.DRAFT)
        self.assertIsNotNone(invoice.due_at)

    def test_second_customer_invoice_signals_existing(self) -> None:
        invoice = generate_customer_invoice(self.db, self.job)
        self.db.commit()
        with self.assertRaises(AlreadyInvoiced) as ctx:
            generate_customer_invoice(self.db, self.job)
        self.assertEqual(ctx.exception.existing.id, invoice.id)

    def test_settlement_invoice_runs_target_to_origin(self) -> None:
        _, intermediary_leg = ensure_cascade(self.db, self.job)
        invoice = generate_settlement_invoice(self.db, intermediary_leg)
        self.assertEqual(invoice.from_company_id, settings.manufacturer_company_id)
        self.assertEqual(invoice.to_company_id, settings.intermediary_company_id)
        self.assertEqual(invoice.amount, Decimal('347.40'))
        self.assertEqual(invoice.purchase_order_id, intermediary_leg.id)

    def test_invoice_chain_is_idempotent(self) -> None:
        first = generate_invoice_chain(self.db, self.job)
        self.db.commit()
        second = generate_invoice_chain(self.db, self.job)
        self.db.commit()

        self.assertEqual([invoice.id for invoice in first], [invoice.id for invoice in second])
        self.assertEqual(
            [(invoice.from_company_id, invoice.to_company_id) for invoice in first],
            [
                (settings.manufacturer_company_id, settings.intermediary_company_id),
                (settings.intermediary_company_id, settings.broker_company_id),
                (settings.broker_company_id, CUSTOMER_ID),
            ],
        )
        count = self.db.execute(select(func.count()).select_from(Invoice)).scalar_one()
        self.assertEqual(count, 3)

    def test_mark_paid_sets_timestamp(self) -> None:
        invoice = generate_customer_invoice(self.db, self.job)
        self.db.commit()
        paid = mark_invoice_paid(self.db, invoice.id)
        self.assertEqual(paid.status, InvoiceStatus.PAID)
        self.assertIsNotNone(paid.paid_at)


if __name__ == '__main__':
    unittest.main()
