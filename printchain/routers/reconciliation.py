from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from printchain.auth import Principal, Role, require_role
from printchain.db import get_db
from printchain.dependencies import get_client_ip
from printchain.services.audit_service import log_audit
from printchain.services.sync_audit_service import (
    AuditScope,
    build_sync_report,
    report_summary,
    report_to_csv,
    run_audit,
)

router = APIRouter(prefix='/reconciliation', tags=['reconciliation'])
audit_access = require_role(Role.ADMIN, Role.AUDITOR)
repair_access = require_role(Role.ADMIN)


class RepairRequest(BaseModel):
    job_nos: list[str] = []


def _scope(job_nos: list[str] | None) -> AuditScope | None:
    cleaned = tuple(job_no.strip() for job_no in job_nos or [] if job_no.strip())
    return AuditScope(job_nos=cleaned) if cleaned else None


@router.get('/report')
def sync_report(
    job_no: list[str] | None = Query(default=None),
    _: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
):
    return report_summary(build_sync_report(db, _scope(job_no)))


@router.get('/report.csv')
def sync_report_csv(
    job_no: list[str] | None = Query(default=None),
    _: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
):
    content = report_to_csv(build_sync_report(db, _scope(job_no)))
    filename = f'po-invoice-sync-{date.today().isoformat()}.csv'
    return StreamingResponse(
        iter([content]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )


@router.post('/repair')
def sync_repair(
    body: RepairRequest,
    request: Request,
    principal: Principal = Depends(repair_access),
    db: Session = Depends(get_db),
):
    try:
        result = run_audit(db, fix=True, actor=principal.username, scope=_scope(body.job_nos))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor=principal.username,
        action='SYNC_REPAIR_RUN',
        ip=get_client_ip(request),
        metadata={'repaired': result.repaired, 'failed': result.failed, 'job_nos': body.job_nos},
    )
    db.commit()
    summary = report_summary(result.report)
    summary.update({'repaired': result.repaired, 'failed': result.failed, 'skipped': result.skipped})
    return summary
