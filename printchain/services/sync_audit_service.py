from __future__ import annotations

import csv
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from io import StringIO

from sqlalchemy import and_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.models import Invoice, Job, PurchaseOrder, SyncLog, SyncTrigger
from printchain.services.allocation_service import quantize_cents
from printchain.services.cascade_service import cascade_legs

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    'Job No',
    'PO Origin',
    'PO Target',
    'PO Vendor Amount',
    'Invoice No',
    'Invoice From',
    'Invoice To',
    'Invoice Amount',
    'Mismatch',
    'Difference',
]


def _tolerance() -> Decimal:
    return Decimal(settings.sync_tolerance)


def _out_of_sync(left: Decimal, right: Decimal) -> bool:
    return abs(Decimal(left) - Decimal(right)) > _tolerance()


@dataclass(frozen=True)
class AuditScope:
    job_ids: tuple[int, ...] = ()
    job_nos: tuple[str, ...] = ()


@dataclass(frozen=True)
class Mismatch:
    job_id: int
    job_no: str
    purchase_order_id: int
    invoice_id: int
    po_amount: Decimal
    invoice_amount: Decimal

    @property
    def difference(self) -> Decimal:
        return self.invoice_amount - self.po_amount


@dataclass(frozen=True)
class SyncPair:
    job_no: str
    purchase_order_id: int
    po_origin: str
    po_target: str
    po_vendor_amount: Decimal
    invoice_id: int
    invoice_no: str
    invoice_from: str
    invoice_to: str
    invoice_amount: Decimal

    @property
    def difference(self) -> Decimal:
        return self.invoice_amount - self.po_vendor_amount

    @property
    def mismatch(self) -> bool:
        return _out_of_sync(self.invoice_amount, self.po_vendor_amount)


@dataclass(frozen=True)
class JobDrift:
    job_id: int
    job_no: str
    document: str
    document_id: int
    expected: Decimal
    actual: Decimal


@dataclass(frozen=True)
class SyncReport:
    pairs: list[SyncPair]
    mismatches: list[Mismatch]
    job_drift: list[JobDrift] = field(default_factory=list)

    @property
    def pair_count(self) -> int:
        return len(self.pairs)

    @property
    def mismatch_count(self) -> int:
        return len(self.mismatches)

    @property
    def percent_in_sync(self) -> Decimal:
        if not self.pairs:
            return Decimal('100.00')
        ratio = Decimal(self.pair_count - self.mismatch_count) / Decimal(self.pair_count)
        return quantize_cents(ratio * 100)


@dataclass
class AuditRunResult:
    report: SyncReport
    repaired: int = 0
    failed: int = 0
    skipped: int = 0


def _scoped(stmt, scope: AuditScope | None):
    if scope is None:
        return stmt
    if scope.job_ids:
        stmt = stmt.where(Job.id.in_(scope.job_ids))
    if scope.job_nos:
        stmt = stmt.where(Job.job_no.in_(scope.job_nos))
    return stmt


def _paired_rows(db: Session, scope: AuditScope | None) -> list[tuple[PurchaseOrder, Invoice, Job]]:
    stmt = (
        select(PurchaseOrder, Invoice, Job)
        .join(Job, Job.id == PurchaseOrder.job_id)
        .join(
            Invoice,
            and_(
                Invoice.job_id == PurchaseOrder.job_id,
                Invoice.from_company_id == PurchaseOrder.target_company_id,
                Invoice.to_company_id == PurchaseOrder.origin_company_id,
            ),
        )
        .order_by(Job.job_no.asc(), PurchaseOrder.id.asc())
    )
    return db.execute(_scoped(stmt, scope)).all()


def audit(db: Session, scope: AuditScope | None = None) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    for po, invoice, job in _paired_rows(db, scope):
        if _out_of_sync(invoice.amount, po.vendor_amount):
            mismatches.append(
                Mismatch(
                    job_id=job.id,
                    job_no=job.job_no,
                    purchase_order_id=po.id,
                    invoice_id=invoice.id,
                    po_amount=Decimal(po.vendor_amount),
                    invoice_amount=Decimal(invoice.amount),
                )
            )
    return mismatches


def find_job_drift(db: Session, scope: AuditScope | None = None) -> list[JobDrift]:
    """Compare cascade-leg POs and customer invoices with the job record they were derived from.

    A leg counts whatever its source, so a webhook PO adopted as the
    manufacturer leg is held to the job figures too.
    """
    drift: list[JobDrift] = []
    jobs = db.execute(_scoped(select(Job).order_by(Job.job_no.asc()), scope)).scalars().all()
    for job in jobs:
        for leg in cascade_legs(job):
            po = db.execute(
                select(PurchaseOrder).where(
                    PurchaseOrder.job_id == job.id,
                    PurchaseOrder.origin_company_id == leg.origin_company_id,
                    PurchaseOrder.target_company_id == leg.target_company_id,
                )
            ).scalar_one_or_none()
            if po is not None and _out_of_sync(po.vendor_amount, leg.vendor_amount):
                drift.append(
                    JobDrift(
                        job_id=job.id,
                        job_no=job.job_no,
                        document='purchase_order',
                        document_id=po.id,
                        expected=leg.vendor_amount,
                        actual=Decimal(po.vendor_amount),
                    )
                )

        customer_invoice = db.execute(
            select(Invoice).where(
                Invoice.job_id == job.id,
                Invoice.from_company_id == settings.broker_company_id,
                Invoice.to_company_id == job.customer_id,
            )
        ).scalar_one_or_none()
        expected_total = quantize_cents(job.customer_total)
        if customer_invoice is not None and _out_of_sync(customer_invoice.amount, expected_total):
            drift.append(
                JobDrift(
                    job_id=job.id,
                    job_no=job.job_no,
                    document='customer_invoice',
                    document_id=customer_invoice.id,
                    expected=expected_total,
                    actual=Decimal(customer_invoice.amount),
                )
            )
    return drift


def build_sync_report(db: Session, scope: AuditScope | None = None) -> SyncReport:
    pairs: list[SyncPair] = []
    mismatches: list[Mismatch] = []
    for po, invoice, job in _paired_rows(db, scope):
        pair = SyncPair(
            job_no=job.job_no,
            purchase_order_id=po.id,
            po_origin=po.origin_company_id,
            po_target=po.target_company_id,
            po_vendor_amount=Decimal(po.vendor_amount),
            invoice_id=invoice.id,
            invoice_no=invoice.invoice_no,
            invoice_from=invoice.from_company_id,
            invoice_to=invoice.to_company_id,
            invoice_amount=Decimal(invoice.amount),
        )
        pairs.append(pair)
        if pair.mismatch:
            mismatches.append(
                Mismatch(
                    job_id=job.id,
                    job_no=job.job_no,
                    purchase_order_id=po.id,
                    invoice_id=invoice.id,
                    po_amount=pair.po_vendor_amount,
                    invoice_amount=pair.invoice_amount,
                )
            )
    return SyncReport(pairs=pairs, mismatches=mismatches, job_drift=find_job_drift(db, scope))


def repair(
    db: Session,
    mismatch: Mismatch,
    *,
    actor: str,
    trigger: SyncTrigger = SyncTrigger.MANUAL_AUDIT,
    notes: str | None = None,
) -> SyncLog | None:
    """Set the invoice amount to its PO's vendor amount.

    Both rows are re-read first, so a pair that is already in sync produces
    no log row. The PO is never written.
    """
    po = db.execute(
        select(PurchaseOrder).where(PurchaseOrder.id == mismatch.purchase_order_id).with_for_update()
    ).scalar_one_or_none()
    invoice = db.execute(
        select(Invoice).where(Invoice.id == mismatch.invoice_id).with_for_update()
    ).scalar_one_or_none()
    if po is None or invoice is None:
        raise ValueError('Purchase order or invoice no longer exists')
    if not _out_of_sync(invoice.amount, po.vendor_amount):
        return None

    old_amount = Decimal(invoice.amount)
    new_amount = quantize_cents(Decimal(po.vendor_amount))
    invoice.amount = new_amount
    sync_log = SyncLog(
        trigger=trigger,
        job_id=mismatch.job_id,
        purchase_order_id=po.id,
        invoice_id=invoice.id,
        field='amount',
        old_value=str(old_amount),
        new_value=str(new_amount),
        changed_by=actor,
        notes=notes or f'Invoice {invoice.invoice_no} aligned with PO vendor amount',
    )
    db.add(sync_log)
    db.flush()
    logger.info(
        'sync.repaired job=%s invoice=%s old=%s new=%s trigger=%s actor=%s',
        mismatch.job_no,
        invoice.invoice_no,
        old_amount,
        new_amount,
        trigger.value,
        actor,
    )
    return sync_log


def repair_customer_invoice(
    db: Session,
    drift: JobDrift,
    *,
    actor: str,
    trigger: SyncTrigger = SyncTrigger.MANUAL_AUDIT,
) -> SyncLog | None:
    invoice = db.execute(
        select(Invoice).where(Invoice.id == drift.document_id).with_for_update()
    ).scalar_one_or_none()
    job = db.get(Job, drift.job_id)
    if invoice is None or job is None:
        raise ValueError('Invoice or job no longer exists')
    expected = quantize_cents(job.customer_total)
    if not _out_of_sync(invoice.amount, expected):
        return None

    old_amount = Decimal(invoice.amount)
    invoice.amount = expected
    sync_log = SyncLog(
        trigger=trigger,
        job_id=job.id,
        invoice_id=invoice.id,
        field='amount',
        old_value=str(old_amount),
        new_value=str(expected),
        changed_by=actor,
        notes=f'Customer invoice {invoice.invoice_no} aligned with job total',
    )
    db.add(sync_log)
    db.flush()
    logger.info('sync.customer_invoice_repaired job=%s old=%s new=%s', job.job_no, old_amount, expected)
    return sync_log


def _with_retries(db: Session, action, description: str) -> tuple[bool, SyncLog | None]:
    attempts = max(settings.sync_repair_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            with db.begin_nested():
                return True, action()
        except OperationalError as exc:
            logger.warning('sync.repair_retry target=%s attempt=%d/%d error=%s', description, attempt, attempts, exc)
            if attempt < attempts:
                time.sleep(settings.task_backoff_base_seconds * (2 ** (attempt - 1)))
    logger.error('sync.repair_failed target=%s attempts=%d', description, attempts)
    return False, None


def run_audit(
    db: Session,
    *,
    fix: bool = False,
    actor: str = 'system',
    scope: AuditScope | None = None,
    trigger: SyncTrigger = SyncTrigger.MANUAL_AUDIT,
) -> AuditRunResult:
    """Build the sync report and, with ``fix``, repair every mismatch in it.

    The report reflects state before repair. Failed repairs are counted.
    """
    report = build_sync_report(db, scope)
    result = AuditRunResult(report=report)
    logger.info(
        'sync.audit pairs=%d mismatches=%d percent_in_sync=%s drift=%d',
        report.pair_count,
        report.mismatch_count,
        report.percent_in_sync,
        len(report.job_drift),
    )
    if not fix:
        return result

    for mismatch in report.mismatches:
        ok, sync_log = _with_retries(
            db,
            lambda m=mismatch: repair(db, m, actor=actor, trigger=trigger),
            f'invoice:{mismatch.invoice_id}',
        )
        if not ok:
            result.failed += 1
        elif sync_log is None:
            result.skipped += 1
        else:
            result.repaired += 1

    for drift in report.job_drift:
        if drift.document != 'customer_invoice':
            continue
        ok, sync_log = _with_retries(
            db,
            lambda d=drift: repair_customer_invoice(db, d, actor=actor, trigger=trigger),
            f'invoice:{drift.document_id}',
        )
        if not ok:
            result.failed += 1
        elif sync_log is None:
            result.skipped += 1
        else:
            result.repaired += 1
    return result


def repair_job(db: Session, job_id: int, *, actor: str, trigger: SyncTrigger) -> AuditRunResult:
    return run_audit(db, fix=True, actor=actor, scope=AuditScope(job_ids=(job_id,)), trigger=trigger)


def report_to_csv(report: SyncReport) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADERS)
    for pair in report.pairs:
        writer.writerow(
            [
                pair.job_no,
                pair.po_origin,
                pair.po_target,
                f'{pair.po_vendor_amount:.2f}',
                pair.invoice_no,
                pair.invoice_from,
                pair.invoice_to,
                f'{pair.invoice_amount:.2f}',
                'YES' if pair.mismatch else 'NO',
                f'{pair.difference:.2f}',
            ]
        )
    return output.getvalue()


def report_summary(report: SyncReport) -> dict:
    return {
        'pairs': report.pair_count,
        'mismatches': report.mismatch_count,
        'percent_in_sync': str(report.percent_in_sync),
        'rows': [
            {
                'job_no': pair.job_no,
                'purchase_order_id': pair.purchase_order_id,
                'po_origin': pair.po_origin,
                'po_target': pair.po_target,
                'po_vendor_amount': str(pair.po_vendor_amount),
                'invoice_id': pair.invoice_id,
                'invoice_no': pair.invoice_no,
                'invoice_amount': str(pair.invoice_amount),
                'mismatch': pair.mismatch,
                'difference': str(pair.difference),
            }
            for pair in report.pairs
        ],
        'job_drift': [
            {
                'job_no': drift.job_no,
                'document': drift.document,
                'document_id': drift.document_id,
                'expected': str(drift.expected),
                'actual': str(drift.actual),
            }
            for drift in report.job_drift
        ],
    }
