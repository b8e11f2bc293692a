from __future__ import annotations

import csv
import unittest
from decimal import Decimal
from io import StringIO

from sqlalchemy import func, select

from printchain.models import Invoice, PurchaseOrder, PurchaseOrderSource, SyncLog, SyncTrigger
from printchain.services.cascade_service import ensure_cascade
from printchain.services.invoice_service import generate_invoice_chain
from printchain.services.job_service import create_job
from printchain.services.sync_audit_service import (
    CSV_HEADERS,
    AuditScope,
    audit,
    build_sync_report,
    find_job_drift,
    repair,
    report_to_csv,
    run_audit,
)
from printchain.services.webhook_service import process_event, record_structured_event
from support import CUSTOMER_ID, SIZE_NAME, make_session_factory, seed_reference_data


class SyncAuditServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        self.db = self.Session()
        seed_reference_data(self.db)
        self.job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        self.manufacturer_invoice, self.intermediary_invoice, self.customer_invoice = generate_invoice_chain(
            self.db, self.job
        )
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _log_count(self) -> int:
        return self.db.execute(select(func.count()).select_from(SyncLog)).scalar_one()

    def _drift_manufacturer_invoice(self, amount: str = '350.00') -> None:
        self.manufacturer_invoice.amount = Decimal(amount)
        self.db.commit()

    def test_clean_chain_is_fully_in_sync(self) -> None:
        report = build_sync_report(self.db)
        self.assertEqual(report.pair_count, 2)
        self.assertEqual(report.mismatch_count, 0)
        self.assertEqual(report.percent_in_sync, Decimal('100.00'))
        self.assertEqual(report.job_drift, [])

    def test_drift_is_detected_with_signed_difference(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        mismatches = audit(self.db)
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0].invoice_id, self.manufacturer_invoice.id)
        self.assertEqual(mismatches[0].difference, Decimal('2.60'))
        self.assertEqual(build_sync_report(self.db).percent_in_sync, Decimal('50.00'))

    def test_sub_cent_difference_is_not_a_mismatch(self) -> None:
        self._drift_manufacturer_invoice('347.41')
        self.assertEqual(audit(self.db), [])

    def test_repair_aligns_invoice_and_never_touches_po(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        po = self.db.get(PurchaseOrder, self.manufacturer_invoice.purchase_order_id)
        po_amounts = (po.original_amount, po.vendor_amount, po.margin_amount)

        sync_log = repair(self.db, audit(self.db)[0], actor='auditor')
        self.db.commit()

        self.assertEqual(self.db.get(Invoice, self.manufacturer_invoice.id).amount, Decimal('347.40'))
        self.assertEqual((po.original_amount, po.vendor_amount, po.margin_amount), po_amounts)
        self.assertEqual(sync_log.trigger, SyncTrigger.MANUAL_AUDIT)
        self.assertEqual(sync_log.field, 'amount')
        self.assertEqual(Decimal(sync_log.old_value), Decimal('350.00'))
        self.assertEqual(Decimal(sync_log.new_value), Decimal('347.40'))
        self.assertEqual(sync_log.changed_by, 'auditor')

    def test_repair_twice_writes_one_log_row(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        mismatch = audit(self.db)[0]
        repair(self.db, mismatch, actor='auditor')
        self.db.commit()
        self.assertIsNone(repair(self.db, mismatch, actor='auditor'))
        self.db.commit()
        self.assertEqual(self._log_count(), 1)

    def test_run_audit_report_only_changes_nothing(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        result = run_audit(self.db, fix=False)
        self.db.commit()
        self.assertEqual(result.report.mismatch_count, 1)
        self.assertEqual(result.repaired, 0)
        self.assertEqual(self._log_count(), 0)

    def test_run_audit_fix_repairs_and_reports_prior_state(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        result = run_audit(self.db, fix=True, actor='audit-script', trigger=SyncTrigger.PO_UPDATE)
        self.db.commit()
        self.assertEqual(result.report.mismatch_count, 1)
        self.assertEqual(result.repaired, 1)
        self.assertEqual(audit(self.db), [])
        log = self.db.execute(select(SyncLog)).scalar_one()
        self.assertEqual(log.trigger, SyncTrigger.PO_UPDATE)

    def test_customer_invoice_drift_is_reported_and_repaired(self) -> None:
        self.customer_invoice.amount = Decimal('600.00')
        self.db.commit()

        report = build_sync_report(self.db)
        self.assertEqual([drift.document for drift in report.job_drift], ['customer_invoice'])

        result = run_audit(self.db, fix=True)
        self.db.commit()
        self.assertEqual(result.repaired, 1)
        self.assertEqual(self.db.get(Invoice, self.customer_invoice.id).amount, Decimal('675.60'))

    def test_webhook_po_adopted_as_manufacturer_leg_is_held_to_job(self) -> None:
        job = create_job(self.db, customer_id=CUSTOMER_ID, size_name=SIZE_NAME, quantity=10000)
        self.db.commit()
        event = record_structured_event(
            self.db, {'componentId': 'C1', 'estimateNumber': 'E1', 'amount': '999.99', 'jobNo': job.job_no}
        )
        process_event(self.db, event.id)
        self.db.commit()

        with self.assertLogs('printchain.services.cascade_service', level='WARNING') as logs:
            legs = ensure_cascade(self.db, job)
        self.db.commit()
        self.assertIn('cascade.leg_differs', logs.output[0])
        self.assertEqual(legs[1].source, PurchaseOrderSource.WEBHOOK)

        drift = find_job_drift(self.db, AuditScope(job_nos=(job.job_no,)))
        self.assertEqual(len(drift), 1)
        self.assertEqual(drift[0].document, 'purchase_order')
        self.assertEqual(drift[0].document_id, legs[1].id)
        self.assertEqual(drift[0].expected, Decimal('347.40'))
        self.assertEqual(drift[0].actual, Decimal('999.99'))

    def test_scope_limits_pairs(self) -> None:
        report = build_sync_report(self.db, AuditScope(job_nos=('J-0000-999999',)))
        self.assertEqual(report.pair_count, 0)
        self.assertEqual(report.percent_in_sync, Decimal('100.00'))

    def test_csv_export_lists_every_pair(self) -> None:
        self._drift_manufacturer_invoice('350.00')
        rows = list(csv.reader(StringIO(report_to_csv(build_sync_report(self.db)))))
        self.assertEqual(rows[0], CSV_HEADERS)
        self.assertEqual(len(rows), 3)
        flagged = [row for row in rows[1:] if row[8] == 'YES']
        self.assertEqual(len(flagged), 1)
        self.assertEqual(flagged[0][3], '347.40')
        self.assertEqual(flagged[0][7], '350.00')
        self.assertEqual(flagged[0][9], '2.60')


if __name__ == '__main__':
    unittest.main()
