from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Protocol

from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.errors import RetryableError
from printchain.models import PurchaseOrder, TaskKind
from printchain.services.audit_service import log_audit
from printchain.services.task_queue_service import enqueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    to: list[str]
    subject: str
    html: str
    attachments: list[dict] = field(default_factory=list)


class Notifier(Protocol):
    def send(self, db: Session, message: NotificationMessage) -> bool: ...


class StubNotifier:
    """Records the notification instead of delivering it."""

    def send(self, db: Session, message: NotificationMessage) -> bool:
        log_audit(
            db,
            actor=None,
            action='NOTIFICATION_STUB_SENT',
            metadata={
                'to': list(message.to),
                'subject': message.subject,
                'attachments': len(message.attachments),
                'status': 'STUB_SENT',
            },
        )
        return True


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return StubNotifier()


def queue_notification(db: Session, *, subject_key: str, message: NotificationMessage) -> None:
    if not settings.notifications_enabled or not message.to:
        return
    enqueue(db, kind=TaskKind.SEND_NOTIFICATION, subject_key=subject_key, payload=asdict(message))


def queue_purchase_order_notification(db: Session, po: PurchaseOrder) -> None:
    reference = po.po_number or po.external_ref or str(po.id)
    message = NotificationMessage(
        to=list(settings.manufacturer_notification_emails),
        subject=f'New purchase order {reference}',
        html=(
            f'<p>Purchase order <strong>{reference}</strong> has been issued.</p>'
            f'<p>Amount: ${po.vendor_amount}</p>'
        ),
    )
    queue_notification(db, subject_key=f'po:{po.id}:created', message=message)


def deliver_notification(db: Session, payload: dict, notifier: Notifier | None = None) -> None:
    message = NotificationMessage(
        to=list(payload.get('to') or []),
        subject=str(payload.get('subject') or ''),
        html=str(payload.get('html') or ''),
        attachments=list(payload.get('attachments') or []),
    )
    sender = notifier or get_notifier()
    if not sender.send(db, message):
        raise RetryableError(f'Notification to {", ".join(message.to)} was not accepted')
    logger.info('notification.sent to=%s subject=%s', ','.join(message.to), message.subject)
