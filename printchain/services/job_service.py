from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from printchain.models import AllocationMode, Company, CompanyKind, Job, SyncLog, SyncTrigger, TaskKind
from printchain.services.allocation_service import (
    AllocationOverrides,
    AllocationResult,
    RateEntry,
    allocate,
    pricing_warnings,
)
from printchain.services.audit_service import log_audit
from printchain.services.cascade_service import amend_cascade
from printchain.services.numbering_service import insert_numbered
from printchain.services.rate_card_service import lookup_rate_entry
from printchain.services.task_queue_service import enqueue

logger = logging.getLogger(__name__)

JOB_NUMBER_PREFIX = 'J'
JOB_NUMBER_ATTEMPTS = 5

FINANCIAL_TOTAL_FIELDS = (
    'customer_total',
    'broker_margin_total',
    'intermediary_print_margin_total',
    'intermediary_paper_margin_total',
    'intermediary_total_margin_total',
    'intermediary_total',
    'manufacturer_total',
    'paper_cost_total',
    'paper_charged_total',
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _get_customer(db: Session, customer_id: str) -> Company:
    customer = db.get(Company, customer_id)
    if customer is None or customer.kind != CompanyKind.CUSTOMER or not customer.active:
        raise ValueError('Customer not found')
    return customer


def _log_warnings(job_label: str, result: AllocationResult, rate: RateEntry) -> None:
    for warning in pricing_warnings(result, rate):
        logger.warning('job.pricing_warning job=%s %s', job_label, warning)


def get_job(db: Session, job_id: int) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise ValueError('Job not found')
    return job


def get_job_by_number(db: Session, job_no: str) -> Job | None:
    return db.execute(select(Job).where(Job.job_no == job_no)).scalar_one_or_none()


def create_job(
    db: Session,
    *,
    customer_id: str,
    size_name: str,
    quantity: int,
    mode: AllocationMode | str = AllocationMode.NORMAL,
    overrides: AllocationOverrides | None = None,
    description: str | None = None,
    customer_po_number: str | None = None,
    actor: str | None = None,
) -> Job:
    _get_customer(db, customer_id)
    rate = lookup_rate_entry(db, size_name)
    result = allocate(rate, quantity, mode, overrides)
    _log_warnings(size_name, result, rate)

    computed_at = _now()

    def build(job_no: str) -> Job:
        return Job(
            job_no=job_no,
            customer_id=customer_id,
            size_name=rate.size_name,
            quantity=quantity,
            description=description,
            customer_po_number=customer_po_number,
            created_by=actor,
            financials_computed_at=computed_at,
            **result.as_job_fields(),
        )

    job = insert_numbered(db, column=Job.job_no, prefix=JOB_NUMBER_PREFIX, build=build, attempts=JOB_NUMBER_ATTEMPTS)
    enqueue(db, kind=TaskKind.GENERATE_CASCADE, subject_key=f'job:{job.id}', payload={'job_id': job.id})
    log_audit(
        db,
        actor=actor,
        action='JOB_CREATED',
        metadata={
            'job_no': job.job_no,
            'mode': result.mode.value,
            'customer_total': str(result.customer_total),
            'requires_approval': result.requires_approval,
        },
    )
    logger.info(
        'job.created job=%s mode=%s quantity=%d customer_total=%s',
        job.job_no,
        result.mode.value,
        quantity,
        result.customer_total,
    )
    return job


def reprice_job(
    db: Session,
    job: Job,
    *,
    actor: str,
    mode: AllocationMode | str | None = None,
    overrides: AllocationOverrides | None = None,
) -> Job:
    """Recompute a job's financials under an explicit override and amend its cascade."""
    rate = lookup_rate_entry(db, job.size_name)
    result = allocate(rate, job.quantity, mode or job.allocation_mode, overrides)
    _log_warnings(job.job_no, result, rate)

    for field_name, new_value in result.as_job_fields().items():
        old_value = getattr(job, field_name)
        if field_name in FINANCIAL_TOTAL_FIELDS and Decimal(old_value) != new_value:
            db.add(
                SyncLog(
                    trigger=SyncTrigger.JOB_OVERRIDE,
                    job_id=job.id,
                    field=field_name,
                    old_value=str(old_value),
                    new_value=str(new_value),
                    changed_by=actor,
                    notes='Explicit financial override',
                )
            )
        setattr(job, field_name, new_value)
    job.financials_computed_at = _now()
    db.flush()

    amend_cascade(db, job, actor=actor)
    log_audit(
        db,
        actor=actor,
        action='JOB_REPRICED',
        metadata={'job_no': job.job_no, 'mode': result.mode.value, 'customer_total': str(result.customer_total)},
    )
    return job


def job_financials(job: Job) -> dict:
    def _value(field_name: str) -> str | None:
        value = getattr(job, field_name)
        return None if value is None else str(value)

    return {
        'id': job.id,
        'job_no': job.job_no,
        'customer_id': job.customer_id,
        'size_name': job.size_name,
        'quantity': job.quantity,
        'allocation_mode': job.allocation_mode.value,
        'customer_cpm': _value('customer_cpm'),
        'standard_customer_cpm': _value('standard_customer_cpm'),
        'customer_total': _value('customer_total'),
        'broker_margin_cpm': _value('broker_margin_cpm'),
        'broker_margin_total': _value('broker_margin_total'),
        'intermediary_print_margin_cpm': _value('intermediary_print_margin_cpm'),
        'intermediary_print_margin_total': _value('intermediary_print_margin_total'),
        'intermediary_paper_margin_cpm': _value('intermediary_paper_margin_cpm'),
        'intermediary_paper_margin_total': _value('intermediary_paper_margin_total'),
        'intermediary_total_margin_total': _value('intermediary_total_margin_total'),
        'intermediary_total': _value('intermediary_total'),
        'manufacturer_cpm': _value('manufacturer_cpm'),
        'manufacturer_total': _value('manufacturer_total'),
        'paper_cost_total': _value('paper_cost_total'),
        'paper_charged_cpm': _value('paper_charged_cpm'),
        'paper_charged_total': _value('paper_charged_total'),
        'paper_weight_total': _value('paper_weight_total'),
        'requires_approval': job.requires_approval,
        'undercharge_amount': _value('undercharge_amount'),
        'is_custom_pricing': job.is_custom_pricing,
    }
