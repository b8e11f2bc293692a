from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.errors import AlreadyInvoiced
from printchain.models import Invoice, InvoiceStatus, Job, PurchaseOrder
from printchain.services.allocation_service import quantize_cents
from printchain.services.cascade_service import ensure_cascade
from printchain.services.numbering_service import insert_numbered, next_number

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def next_invoice_number(db: Session, year: int | None = None) -> str:
    return next_number(db, Invoice.invoice_no, settings.invoice_number_prefix, year)


def find_invoice(db: Session, *, job_id: int, from_company_id: str, to_company_id: str) -> Invoice | None:
    return db.execute(
        select(Invoice).where(
            Invoice.job_id == job_id,
            Invoice.from_company_id == from_company_id,
            Invoice.to_company_id == to_company_id,
        )
    ).scalar_one_or_none()


def _issue_invoice(
    db: Session,
    *,
    job_id: int,
    from_company_id: str,
    to_company_id: str,
    amount: Decimal,
    purchase_order_id: int | None = None,
) -> Invoice:
    existing = find_invoice(db, job_id=job_id, from_company_id=from_company_id, to_company_id=to_company_id)
    if existing is not None:
        raise AlreadyInvoiced(f'Invoice {existing.invoice_no} already issued', existing)

    issued_at = _now()

    def build(invoice_no: str) -> Invoice:
        return Invoice(
            invoice_no=invoice_no,
            job_id=job_id,
            purchase_order_id=purchase_order_id,
            from_company_id=from_company_id,
            to_company_id=to_company_id,
            amount=quantize_cents(Decimal(amount)),
            status=InvoiceStatus.DRAFT,
            issued_at=issued_at,
            due_at=issued_at + timedelta(days=settings.invoice_due_days),
        )

    def check_pair() -> None:
        # A collision on the pair key means another writer invoiced it first.
        winner = find_invoice(db, job_id=job_id, from_company_id=from_company_id, to_company_id=to_company_id)
        if winner is not None:
            raise AlreadyInvoiced(f'Invoice {winner.invoice_no} already issued', winner)

    invoice = insert_numbered(
        db,
        column=Invoice.invoice_no,
        prefix=settings.invoice_number_prefix,
        build=build,
        attempts=settings.invoice_number_retries,
        on_conflict=check_pair,
    )
    logger.info(
        'invoice.created invoice_no=%s job=%s from=%s to=%s amount=%s',
        invoice.invoice_no,
        job_id,
        from_company_id,
        to_company_id,
        invoice.amount,
    )
    return invoice


def generate_customer_invoice(db: Session, job: Job) -> Invoice:
    return _issue_invoice(
        db,
        job_id=job.id,
        from_company_id=settings.broker_company_id,
        to_company_id=job.customer_id,
        amount=quantize_cents(job.customer_total),
    )


def generate_settlement_invoice(db: Session, po: PurchaseOrder) -> Invoice:
    if po.job_id is None:
        raise ValueError('Purchase order is not linked to a job')
    return _issue_invoice(
        db,
        job_id=po.job_id,
        from_company_id=po.target_company_id,
        to_company_id=po.origin_company_id,
        amount=po.vendor_amount,
        purchase_order_id=po.id,
    )


def generate_invoice_chain(db: Session, job: Job) -> list[Invoice]:
    """Issue every invoice a finished job needs, manufacturer first.

    Invoices that already exist are returned as they are.
    """
    purchase_orders = ensure_cascade(db, job)
    invoices: list[Invoice] = []
    for po in reversed(purchase_orders):
        try:
            invoices.append(generate_settlement_invoice(db, po))
        except AlreadyInvoiced as exc:
            invoices.append(exc.existing)
    try:
        invoices.append(generate_customer_invoice(db, job))
    except AlreadyInvoiced as exc:
        invoices.append(exc.existing)
    return invoices


def generate_invoices_for_job(db: Session, job_id: int) -> list[Invoice]:
    job = db.get(Job, job_id)
    if job is None:
        raise ValueError('Job not found')
    return generate_invoice_chain(db, job)


def mark_invoice_paid(db: Session, invoice_id: int) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise ValueError('Invoice not found')
    if invoice.status != InvoiceStatus.PAID:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = _now()
        logger.info('invoice.paid invoice_no=%s', invoice.invoice_no)
    return invoice


def list_job_invoices(db: Session, job_id: int) -> list[Invoice]:
    return db.execute(select(Invoice).where(Invoice.job_id == job_id).order_by(Invoice.id.asc())).scalars().all()
