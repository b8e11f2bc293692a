from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.errors import PersistenceFailure
from printchain.models import (
    Job,
    PurchaseOrder,
    PurchaseOrderSource,
    SyncLog,
    SyncTrigger,
    TaskKind,
)
from printchain.services.allocation_service import quantize_cents
from printchain.services.notification_service import queue_purchase_order_notification
from printchain.services.task_queue_service import enqueue

logger = logging.getLogger(__name__)

AMOUNT_FIELDS = ('original_amount', 'vendor_amount', 'margin_amount')


@dataclass(frozen=True)
class CascadeLeg:
    origin_company_id: str
    target_company_id: str
    original_amount: Decimal
    vendor_amount: Decimal
    margin_amount: Decimal
    po_number: str


def cascade_legs(job: Job) -> list[CascadeLeg]:
    broker_leg_vendor = quantize_cents(job.intermediary_total)
    broker_leg = CascadeLeg(
        origin_company_id=settings.broker_company_id,
        target_company_id=settings.intermediary_company_id,
        original_amount=quantize_cents(job.customer_total),
        vendor_amount=broker_leg_vendor,
        margin_amount=quantize_cents(job.broker_margin_total),
        po_number=f'{settings.broker_po_prefix}-{job.customer_po_number or job.job_no}',
    )
    intermediary_leg = CascadeLeg(
        origin_company_id=settings.intermediary_company_id,
        target_company_id=settings.manufacturer_company_id,
        original_amount=broker_leg_vendor,
        vendor_amount=quantize_cents(job.manufacturer_total),
        margin_amount=quantize_cents(job.intermediary_total_margin_total),
        po_number=f'{settings.intermediary_po_prefix}-{job.job_no}',
    )
    return [broker_leg, intermediary_leg]


def find_purchase_order(
    db: Session,
    *,
    job_id: int | None = None,
    origin_company_id: str | None = None,
    target_company_id: str | None = None,
    external_ref: str | None = None,
) -> PurchaseOrder | None:
    if external_ref:
        po = db.execute(select(PurchaseOrder).where(PurchaseOrder.external_ref == external_ref)).scalar_one_or_none()
        if po is not None:
            return po
    if job_id is not None and origin_company_id and target_company_id:
        return db.execute(
            select(PurchaseOrder).where(
                PurchaseOrder.job_id == job_id,
                PurchaseOrder.origin_company_id == origin_company_id,
                PurchaseOrder.target_company_id == target_company_id,
            )
        ).scalar_one_or_none()
    return None


def create_purchase_order(
    db: Session,
    *,
    origin_company_id: str,
    target_company_id: str,
    original_amount: Decimal,
    vendor_amount: Decimal,
    margin_amount: Decimal,
    job_id: int | None = None,
    external_ref: str | None = None,
    po_number: str | None = None,
    reference_po_number: str | None = None,
    description: str | None = None,
    source: PurchaseOrderSource = PurchaseOrderSource.CASCADE,
) -> tuple[PurchaseOrder, bool]:
    """Insert a PO unless one already exists under its natural key.

    Returns ``(po, created)``. Keys are ``(job, origin, target)`` and
    ``external_ref``; a concurrent insert that wins the race is returned
    as the existing row.
    """
    keys = {
        'job_id': job_id,
        'origin_company_id': origin_company_id,
        'target_company_id': target_company_id,
        'external_ref': external_ref,
    }
    existing = find_purchase_order(db, **keys)
    if existing is not None:
        return existing, False

    po = PurchaseOrder(
        job_id=job_id,
        origin_company_id=origin_company_id,
        target_company_id=target_company_id,
        original_amount=quantize_cents(Decimal(original_amount)),
        vendor_amount=quantize_cents(Decimal(vendor_amount)),
        margin_amount=quantize_cents(Decimal(margin_amount)),
        external_ref=external_ref,
        po_number=po_number,
        reference_po_number=reference_po_number,
        description=description,
        source=source,
    )
    try:
        with db.begin_nested():
            db.add(po)
            db.flush()
    except IntegrityError as exc:
        existing = find_purchase_order(db, **keys)
        if existing is None:
            raise PersistenceFailure(f'Purchase order insert failed: {exc.orig}') from exc
        logger.info(
            'purchase_order.race_resolved job=%s origin=%s target=%s external_ref=%s id=%s',
            job_id,
            origin_company_id,
            target_company_id,
            external_ref,
            existing.id,
        )
        return existing, False

    logger.info(
        'purchase_order.created id=%s job=%s origin=%s target=%s vendor_amount=%s',
        po.id,
        job_id,
        origin_company_id,
        target_company_id,
        po.vendor_amount,
    )
    return po, True


def ensure_cascade(db: Session, job: Job) -> list[PurchaseOrder]:
    """Create the broker and intermediary legs for a job, reusing whichever already exist."""
    purchase_orders: list[PurchaseOrder] = []
    created_legs = 0
    for leg in cascade_legs(job):
        po, created = create_purchase_order(
            db,
            job_id=job.id,
            origin_company_id=leg.origin_company_id,
            target_company_id=leg.target_company_id,
            original_amount=leg.original_amount,
            vendor_amount=leg.vendor_amount,
            margin_amount=leg.margin_amount,
            po_number=leg.po_number,
            reference_po_number=job.customer_po_number,
            description=job.description,
        )
        purchase_orders.append(po)
        if created:
            created_legs += 1
            if leg.target_company_id == settings.manufacturer_company_id:
                queue_purchase_order_notification(db, po)
        elif abs(Decimal(po.vendor_amount) - leg.vendor_amount) > Decimal(settings.sync_tolerance):
            logger.warning(
                'cascade.leg_differs job=%s po=%s source=%s vendor=%s expected=%s',
                job.job_no,
                po.id,
                po.source.value,
                po.vendor_amount,
                leg.vendor_amount,
            )

    if created_legs:
        logger.info('cascade.created job=%s legs=%d', job.job_no, created_legs)
    else:
        logger.info('cascade.exists job=%s', job.job_no)
    return purchase_orders


def generate_cascade_for_job(db: Session, job_id: int) -> list[PurchaseOrder]:
    job = db.get(Job, job_id)
    if job is None:
        raise ValueError('Job not found')
    return ensure_cascade(db, job)


def amend_cascade(db: Session, job: Job, *, actor: str) -> list[PurchaseOrder]:
    """Bring existing cascade legs in line with re-priced job figures.

    Invoices are left for the audit-repair task queued here.
    """
    purchase_orders: list[PurchaseOrder] = []
    for leg in cascade_legs(job):
        po, created = create_purchase_order(
            db,
            job_id=job.id,
            origin_company_id=leg.origin_company_id,
            target_company_id=leg.target_company_id,
            original_amount=leg.original_amount,
            vendor_amount=leg.vendor_amount,
            margin_amount=leg.margin_amount,
            po_number=leg.po_number,
            reference_po_number=job.customer_po_number,
            description=job.description,
        )
        purchase_orders.append(po)
        if created:
            continue
        for field_name in AMOUNT_FIELDS:
            old_value = getattr(po, field_name)
            new_value = getattr(leg, field_name)
            if Decimal(old_value) == new_value:
                continue
            setattr(po, field_name, new_value)
            db.add(
                SyncLog(
                    trigger=SyncTrigger.JOB_OVERRIDE,
                    job_id=job.id,
                    purchase_order_id=po.id,
                    field=field_name,
                    old_value=str(old_value),
                    new_value=str(new_value),
                    changed_by=actor,
                    notes=f'Job {job.job_no} re-priced',
                )
            )
    db.flush()
    enqueue(
        db,
        kind=TaskKind.AUDIT_REPAIR,
        subject_key=f'job:{job.id}',
        payload={'job_id': job.id, 'trigger': SyncTrigger.PO_UPDATE.value, 'actor': actor},
    )
    logger.info('cascade.amended job=%s actor=%s', job.job_no, actor)
    return purchase_orders
