from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from printchain.auth import Principal, Role, require_role
from printchain.db import get_db
from printchain.dependencies import get_client_ip
from printchain.models import AllocationMode, Invoice, PurchaseOrder
from printchain.services.allocation_service import AllocationOverrides, overrides_from_customer_total
from printchain.services.audit_service import log_audit
from printchain.services.cascade_service import ensure_cascade
from printchain.services.invoice_service import generate_invoice_chain, list_job_invoices
from printchain.services.job_service import create_job, get_job, job_financials, reprice_job
from printchain.services.rate_card_service import list_rate_entries

router = APIRouter(prefix='/jobs', tags=['jobs'])
rate_card_router = APIRouter(prefix='/rate-card', tags=['jobs'])
job_access = require_role(Role.ADMIN, Role.BROKER)
admin_access = require_role(Role.ADMIN)


class JobCreateRequest(BaseModel):
    customer_id: str
    size_name: str
    quantity: int
    mode: AllocationMode = AllocationMode.NORMAL
    customer_cpm: Decimal | None = None
    customer_total: Decimal | None = None
    description: str | None = None
    customer_po_number: str | None = None


class JobRepriceRequest(BaseModel):
    mode: AllocationMode | None = None
    customer_cpm: Decimal | None = None
    customer_total: Decimal | None = None


def _overrides(quantity: int, customer_cpm: Decimal | None, customer_total: Decimal | None) -> AllocationOverrides | None:
    if customer_total is not None:
        return overrides_from_customer_total(customer_total, quantity)
    if customer_cpm is not None:
        return AllocationOverrides(customer_cpm=customer_cpm)
    return None


def _po_row(po: PurchaseOrder) -> dict:
    return {
        'id': po.id,
        'po_number': po.po_number,
        'origin_company_id': po.origin_company_id,
        'target_company_id': po.target_company_id,
        'original_amount': str(po.original_amount),
        'vendor_amount': str(po.vendor_amount),
        'margin_amount': str(po.margin_amount),
        'status': po.status.value,
    }


def _invoice_row(invoice: Invoice) -> dict:
    return {
        'id': invoice.id,
        'invoice_no': invoice.invoice_no,
        'from_company_id': invoice.from_company_id,
        'to_company_id': invoice.to_company_id,
        'amount': str(invoice.amount),
        'status': invoice.status.value,
        'due_at': invoice.due_at.isoformat() if invoice.due_at else None,
    }


@router.post('', status_code=201)
def create_job_route(
    body: JobCreateRequest,
    request: Request,
    principal: Principal = Depends(job_access),
    db: Session = Depends(get_db),
):
    try:
        overrides = _overrides(body.quantity, body.customer_cpm, body.customer_total)
        job = create_job(
            db,
            customer_id=body.customer_id,
            size_name=body.size_name,
            quantity=body.quantity,
            mode=body.mode,
            overrides=overrides,
            description=body.description,
            customer_po_number=body.customer_po_number,
            actor=principal.username,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor=principal.username,
        action='JOB_CREATE_REQUEST',
        ip=get_client_ip(request),
        metadata={'job_no': job.job_no},
    )
    db.commit()
    return job_financials(job)


@router.get('/{job_id}/financials')
def job_financials_route(job_id: int, _: Principal = Depends(job_access), db: Session = Depends(get_db)):
    try:
        job = get_job(db, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return job_financials(job)


@router.post('/{job_id}/reprice')
def reprice_job_route(
    job_id: int,
    body: JobRepriceRequest,
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        job = get_job(db, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    try:
        overrides = _overrides(job.quantity, body.customer_cpm, body.customer_total)
        reprice_job(db, job, actor=principal.username, mode=body.mode, overrides=overrides)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor=principal.username,
        action='JOB_REPRICE_REQUEST',
        ip=get_client_ip(request),
        metadata={'job_no': job.job_no},
    )
    db.commit()
    return job_financials(job)


@router.post('/{job_id}/purchase-orders')
def generate_cascade_route(job_id: int, _: Principal = Depends(job_access), db: Session = Depends(get_db)):
    try:
        job = get_job(db, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    purchase_orders = ensure_cascade(db, job)
    db.commit()
    return {'job_no': job.job_no, 'purchase_orders': [_po_row(po) for po in purchase_orders]}


@router.post('/{job_id}/invoices')
def generate_invoices_route(job_id: int, _: Principal = Depends(job_access), db: Session = Depends(get_db)):
    try:
        job = get_job(db, job_id)
        invoices = generate_invoice_chain(db, job)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'job_no': job.job_no, 'invoices': [_invoice_row(invoice) for invoice in invoices]}


@router.get('/{job_id}/invoices')
def job_invoices_route(job_id: int, _: Principal = Depends(job_access), db: Session = Depends(get_db)):
    try:
        job = get_job(db, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {'job_no': job.job_no, 'invoices': [_invoice_row(invoice) for invoice in list_job_invoices(db, job.id)]}


@rate_card_router.get('')
def rate_card(include_inactive: bool = False, _: Principal = Depends(job_access), db: Session = Depends(get_db)):
    return [
        {
            'size_name': entry.size_name,
            'manufacturer_cpm': str(entry.manufacturer_cpm),
            'paper_cost_cpm': str(entry.paper_cost_cpm),
            'paper_charged_cpm': str(entry.paper_charged_cpm),
            'intermediary_invoice_per_m': (
                str(entry.intermediary_invoice_per_m) if entry.intermediary_invoice_per_m is not None else None
            ),
            'broker_invoice_per_m': str(entry.broker_invoice_per_m),
            'active': entry.active,
        }
        for entry in list_rate_entries(db, include_inactive=include_inactive)
    ]
