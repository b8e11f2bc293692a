from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from printchain.auth import Principal, Role, require_role
from printchain.db import get_db
from printchain.errors import RetryableError
from printchain.models import TaskKind, WebhookSource
from printchain.security.webhooks import verify_webhook_secret
from printchain.services.task_queue_service import enqueue
from printchain.services.webhook_service import (
    EmailAttachment,
    list_webhook_events,
    process_event,
    record_email_event,
    record_structured_event,
    webhook_result_payload,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/webhooks', tags=['webhooks'], dependencies=[Depends(verify_webhook_secret)])
events_router = APIRouter(prefix='/webhook-events', tags=['webhooks'])
admin_access = require_role(Role.ADMIN, Role.AUDITOR)


def _run_pipeline(db: Session, event_id: int) -> dict:
    try:
        result = process_event(db, event_id)
        db.commit()
    except (RetryableError, OperationalError) as exc:
        db.rollback()
        logger.warning('webhook.deferred event=%s error=%s', event_id, exc)
        enqueue(db, kind=TaskKind.PROCESS_WEBHOOK, subject_key=f'event:{event_id}', payload={'event_id': event_id})
        db.commit()
        return {'action': 'queued', 'event_id': event_id}
    return webhook_result_payload(result)


@router.post('/intermediary-po')
def structured_po_webhook(payload: dict = Body(...), db: Session = Depends(get_db)):
    event = record_structured_event(db, payload)
    db.commit()
    return _run_pipeline(db, event.id)


@router.post('/inbound-email')
async def inbound_email_webhook(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    attachments: list[EmailAttachment] = []
    for _, value in form.multi_items():
        if isinstance(value, UploadFile):
            attachments.append(
                EmailAttachment(
                    filename=value.filename or 'attachment',
                    content_type=value.content_type,
                    content=await value.read(),
                )
            )

    event = record_email_event(
        db,
        sender=str(form.get('from') or ''),
        subject=str(form.get('subject') or ''),
        text=str(form.get('text') or ''),
        attachments=attachments,
    )
    db.commit()
    return _run_pipeline(db, event.id)


@events_router.get('')
def webhook_events(
    source: str | None = None,
    processed: bool | None = None,
    limit: int = 100,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    try:
        source_filter = WebhookSource(source.upper()) if source else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid source filter') from exc

    events = list_webhook_events(db, source=source_filter, processed=processed, limit=min(max(limit, 1), 500))
    return [
        {
            'id': event.id,
            'source': event.source.value,
            'status': event.status.value,
            'processed': event.processed,
            'reject_reason': event.reject_reason,
            'error_message': event.error_message,
            'external_ref': event.external_ref,
            'purchase_order_id': event.purchase_order_id,
            'created_at': event.created_at.isoformat() if event.created_at else None,
        }
        for event in events
    ]
