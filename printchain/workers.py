from __future__ import annotations

from sqlalchemy.orm import Session

from printchain.errors import PersistenceFailure
from printchain.models import SyncTrigger, TaskKind
from printchain.services.cascade_service import generate_cascade_for_job
from printchain.services.invoice_service import generate_invoices_for_job
from printchain.services.notification_service import deliver_notification
from printchain.services.sync_audit_service import repair_job
from printchain.services.task_queue_service import TaskHandler
from printchain.services.webhook_service import mark_event_failed, process_event


def _generate_cascade(db: Session, payload: dict) -> None:
    generate_cascade_for_job(db, int(payload['job_id']))


def _generate_invoices(db: Session, payload: dict) -> None:
    generate_invoices_for_job(db, int(payload['job_id']))


def _audit_repair(db: Session, payload: dict) -> None:
    result = repair_job(
        db,
        int(payload['job_id']),
        actor=payload.get('actor') or 'system',
        trigger=SyncTrigger(payload.get('trigger') or SyncTrigger.MANUAL_AUDIT.value),
    )
    if result.failed:
        raise PersistenceFailure(f'{result.failed} repair(s) failed for job {payload["job_id"]}')


def _process_webhook(db: Session, payload: dict) -> None:
    process_event(db, int(payload['event_id']))


def _webhook_exhausted(db: Session, payload: dict, error: str) -> None:
    mark_event_failed(db, int(payload['event_id']), error)


def _send_notification(db: Session, payload: dict) -> None:
    deliver_notification(db, payload)


def build_handlers() -> dict[TaskKind, TaskHandler]:
    return {
        TaskKind.GENERATE_CASCADE: TaskHandler(run=_generate_cascade),
        TaskKind.GENERATE_INVOICES: TaskHandler(run=_generate_invoices),
        TaskKind.AUDIT_REPAIR: TaskHandler(run=_audit_repair),
        TaskKind.PROCESS_WEBHOOK: TaskHandler(run=_process_webhook, on_failed=_webhook_exhausted),
        TaskKind.SEND_NOTIFICATION: TaskHandler(run=_send_notification),
    }
