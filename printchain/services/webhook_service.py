from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.errors import (
    DuplicatePO,
    InvalidSender,
    MissingAttachment,
    NoCustomerCode,
    ParseValidationFailed,
    WebhookRejected,
)
from printchain.models import (
    Company,
    CompanyKind,
    PurchaseOrder,
    PurchaseOrderSource,
    WebhookEvent,
    WebhookEventStatus,
    WebhookSource,
)
from printchain.services.allocation_service import quantize_cents
from printchain.services.audit_service import log_audit, log_security_event
from printchain.services.cascade_service import create_purchase_order
from printchain.services.job_service import get_job_by_number
from printchain.services.notification_service import queue_purchase_order_notification
from printchain.services.po_extraction_service import (
    ExtractedPO,
    POExtractor,
    extract_with_timeout,
    find_customer_code,
    get_po_extractor,
)

logger = logging.getLogger(__name__)

FINISHED_STATUSES = {
    WebhookEventStatus.CREATED,
    WebhookEventStatus.DUPLICATE,
    WebhookEventStatus.REJECTED,
    WebhookEventStatus.PARSE_FAILED,
    WebhookEventStatus.FAILED,
}

_BRACKETED_SENDER = re.compile(r'(?P<name>"[^"]*"|[^"<>]*)<\s*(?P<address>[^<>\s@]+@[^<>\s@]+)\s*>')
_BARE_SENDER = re.compile(r'[^<>\s@"]+@[^<>\s@"]+')


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content_type: str | None
    content: bytes


@dataclass(frozen=True)
class WebhookResult:
    action: str
    event_id: int
    reason: str | None = None
    purchase_order: PurchaseOrder | None = None
    message: str | None = None


@dataclass(frozen=True)
class ParsedPO:
    customer_code: str
    customer_id: str
    amount: Decimal
    po_number: str | None
    description: str


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_sender(raw: str | None) -> str | None:
    """Return the bare lower-case address from ``addr`` or ``Name <addr>``.

    Anything else, including text after the closing bracket, yields None.
    """
    value = (raw or '').strip()
    if not value:
        return None
    match = _BRACKETED_SENDER.fullmatch(value)
    if match:
        return match.group('address').lower()
    if _BARE_SENDER.fullmatch(value):
        return value.lower()
    return None


def validate_sender(raw: str | None) -> str:
    address = normalize_sender(raw)
    allowed = {sender.strip().lower() for sender in settings.webhook_allowed_senders}
    if address is None or address not in allowed:
        raise InvalidSender(f'Sender not allowed: {raw!r}')
    return address


def match_customer_code(subject: str | None) -> str:
    code = find_customer_code(subject or '', settings.webhook_customer_codes)
    if code is None:
        raise NoCustomerCode(f'No customer code in subject: {subject!r}')
    return code


def _is_pdf(attachment: EmailAttachment) -> bool:
    content_type = (attachment.content_type or '').lower()
    return content_type == 'application/pdf' or attachment.filename.lower().endswith('.pdf')


def record_email_event(
    db: Session,
    *,
    sender: str | None,
    subject: str | None,
    text: str | None,
    attachments: list[EmailAttachment],
) -> WebhookEvent:
    pdf = next((attachment for attachment in attachments if _is_pdf(attachment)), None)
    event = WebhookEvent(
        source=WebhookSource.EMAIL,
        status=WebhookEventStatus.RECEIVED,
        payload={
            'from': sender,
            'subject': subject,
            'text': text,
            'attachments': [attachment.filename for attachment in attachments],
        },
        attachment_filename=pdf.filename if pdf else None,
        attachment_content=pdf.content if pdf else None,
        processed=False,
        created_at=_now(),
    )
    db.add(event)
    db.flush()
    logger.info('webhook.received source=email event=%s attachments=%d', event.id, len(attachments))
    return event


def record_structured_event(db: Session, payload: dict) -> WebhookEvent:
    event = WebhookEvent(
        source=WebhookSource.STRUCTURED,
        status=WebhookEventStatus.RECEIVED,
        payload=dict(payload),
        processed=False,
        created_at=_now(),
    )
    db.add(event)
    db.flush()
    logger.info('webhook.received source=structured event=%s', event.id)
    return event


def _finished_result(db: Session, event: WebhookEvent) -> WebhookResult:
    action = {
        WebhookEventStatus.CREATED: 'created',
        WebhookEventStatus.DUPLICATE: 'duplicate',
        WebhookEventStatus.REJECTED: 'ignored',
        WebhookEventStatus.PARSE_FAILED: 'parse_failed',
        WebhookEventStatus.FAILED: 'failed',
    }[event.status]
    po = db.get(PurchaseOrder, event.purchase_order_id) if event.purchase_order_id else None
    return WebhookResult(
        action=action,
        event_id=event.id,
        reason=event.reject_reason,
        purchase_order=po,
        message=event.error_message,
    )


def _reject(db: Session, event: WebhookEvent, exc: WebhookRejected) -> WebhookResult:
    event.status = WebhookEventStatus.REJECTED
    event.reject_reason = exc.reason
    event.error_message = str(exc)
    event.processed = True
    metadata = {'event_id': event.id, 'reason': exc.reason, 'detail': str(exc)}
    if isinstance(exc, InvalidSender):
        log_security_event(db, action='WEBHOOK_SENDER_REJECTED', metadata=metadata)
    else:
        logger.warning('webhook.rejected event=%s reason=%s', event.id, exc.reason)
        log_audit(db, actor=None, action='WEBHOOK_REJECTED', metadata=metadata)
    db.flush()
    return WebhookResult(action='ignored', event_id=event.id, reason=exc.reason, message=str(exc))


def _parse_failed(db: Session, event: WebhookEvent, exc: ParseValidationFailed) -> WebhookResult:
    # Left unprocessed for manual review.
    event.status = WebhookEventStatus.PARSE_FAILED
    event.error_message = str(exc)
    log_audit(db, actor=None, action='WEBHOOK_PARSE_FAILED', metadata={'event_id': event.id, 'detail': str(exc)})
    db.flush()
    logger.warning('webhook.parse_failed event=%s error=%s', event.id, exc)
    return WebhookResult(action='parse_failed', event_id=event.id, message=str(exc))


def validate_extraction(db: Session, extracted: ExtractedPO, *, subject_code: str | None = None) -> ParsedPO:
    code = extracted.customer_code or subject_code
    customer_id = settings.webhook_customer_codes.get(code) if code else None
    customer = db.get(Company, customer_id) if customer_id else None
    if customer is None or customer.kind != CompanyKind.CUSTOMER:
        raise ParseValidationFailed('Parsed PO is missing customer information')
    if extracted.amount is None or not extracted.amount.is_finite() or extracted.amount <= 0:
        raise ParseValidationFailed('Parsed PO has an invalid amount')
    return ParsedPO(
        customer_code=code,
        customer_id=customer.id,
        amount=quantize_cents(extracted.amount),
        po_number=extracted.po_number,
        description=extracted.description,
    )


def email_external_ref(event: WebhookEvent, parsed: ParsedPO) -> str:
    suffix = parsed.po_number or f'T{event.created_at:%Y%m%d%H%M%S%f}'
    return f'{settings.webhook_intermediary_label}-{parsed.customer_code}-{suffix}'


def create_webhook_purchase_order(
    db: Session,
    *,
    external_ref: str,
    amount: Decimal,
    job_id: int | None = None,
    po_number: str | None = None,
    description: str | None = None,
) -> PurchaseOrder:
    """Insert an intermediary-to-manufacturer PO keyed by ``external_ref``.

    Raises ``DuplicatePO`` carrying the stored row when the key is taken.
    """
    po, created = create_purchase_order(
        db,
        origin_company_id=settings.intermediary_company_id,
        target_company_id=settings.manufacturer_company_id,
        original_amount=amount,
        vendor_amount=amount,
        margin_amount=Decimal('0'),
        job_id=job_id,
        external_ref=external_ref,
        po_number=po_number,
        description=description,
        source=PurchaseOrderSource.WEBHOOK,
    )
    if not created:
        raise DuplicatePO(f'PO {external_ref} already exists', po)
    return po


def _create_or_duplicate(
    db: Session,
    event: WebhookEvent,
    *,
    external_ref: str,
    amount: Decimal,
    job_id: int | None,
    po_number: str | None,
    description: str | None,
) -> WebhookResult:
    event.status = WebhookEventStatus.DEDUP_CHECKED
    event.external_ref = external_ref

    try:
        existing = create_webhook_purchase_order(
            db,
            external_ref=external_ref,
            amount=amount,
            job_id=job_id,
            po_number=po_number,
            description=description,
        )
        created = True
    except DuplicatePO as exc:
        existing = exc.existing
        created = False

    event.purchase_order_id = existing.id
    event.processed = True
    if created:
        event.status = WebhookEventStatus.CREATED
        queue_purchase_order_notification(db, existing)
        logger.info('webhook.created event=%s external_ref=%s po=%s', event.id, external_ref, existing.id)
    else:
        event.status = WebhookEventStatus.DUPLICATE
        logger.info('webhook.duplicate event=%s external_ref=%s po=%s', event.id, external_ref, existing.id)
    db.flush()
    return WebhookResult(
        action='created' if created else 'duplicate',
        event_id=event.id,
        purchase_order=existing,
    )


def _process_email(db: Session, event: WebhookEvent, extractor: POExtractor) -> WebhookResult:
    payload = event.payload or {}
    try:
        validate_sender(payload.get('from'))
        subject_code = match_customer_code(payload.get('subject'))
        if not event.attachment_content:
            raise MissingAttachment('No PDF attachment')
    except WebhookRejected as exc:
        return _reject(db, event, exc)
    event.status = WebhookEventStatus.VALIDATED

    try:
        extracted = extract_with_timeout(extractor, event.attachment_content)
        parsed = validate_extraction(db, extracted, subject_code=subject_code)
    except ParseValidationFailed as exc:
        return _parse_failed(db, event, exc)
    event.status = WebhookEventStatus.PARSED

    return _create_or_duplicate(
        db,
        event,
        external_ref=email_external_ref(event, parsed),
        amount=parsed.amount,
        job_id=None,
        po_number=parsed.po_number,
        description=parsed.description,
    )


def _structured_fields(payload: dict) -> tuple[str, str, Decimal]:
    component_id = str(payload.get('componentId') or '').strip()
    estimate_number = str(payload.get('estimateNumber') or '').strip()
    if not component_id or not estimate_number:
        raise ParseValidationFailed('componentId and estimateNumber are required')
    try:
        amount = Decimal(str(payload.get('amount')))
    except InvalidOperation as exc:
        raise ParseValidationFailed('Payload has an invalid amount') from exc
    if not amount.is_finite() or amount <= 0:
        raise ParseValidationFailed('Payload has an invalid amount')
    return component_id, estimate_number, quantize_cents(amount)


def _process_structured(db: Session, event: WebhookEvent) -> WebhookResult:
    payload = event.payload or {}
    event.status = WebhookEventStatus.VALIDATED
    try:
        component_id, estimate_number, amount = _structured_fields(payload)
    except ParseValidationFailed as exc:
        return _parse_failed(db, event, exc)
    event.status = WebhookEventStatus.PARSED

    job_id = None
    job_no = str(payload.get('jobNo') or '').strip()
    if job_no:
        job = get_job_by_number(db, job_no)
        if job is None:
            logger.warning('webhook.unknown_job event=%s job_no=%s', event.id, job_no)
        else:
            job_id = job.id

    return _create_or_duplicate(
        db,
        event,
        external_ref=f'{component_id}-{estimate_number}',
        amount=amount,
        job_id=job_id,
        po_number=estimate_number,
        description=f'Component {component_id} estimate {estimate_number}',
    )


def process_event(db: Session, event_id: int, *, extractor: POExtractor | None = None) -> WebhookResult:
    """Run a recorded event through validation, parsing, dedup and PO creation.

    Retryable failures (extraction timeout, persistence) propagate so the
    caller can roll back and queue another attempt.
    """
    event = db.get(WebhookEvent, event_id)
    if event is None:
        raise ValueError('Webhook event not found')
    if event.status in FINISHED_STATUSES:
        return _finished_result(db, event)

    if event.source == WebhookSource.EMAIL:
        return _process_email(db, event, extractor or get_po_extractor())
    return _process_structured(db, event)


def mark_event_failed(db: Session, event_id: int, error: str) -> None:
    event = db.get(WebhookEvent, event_id)
    if event is None:
        return
    event.status = WebhookEventStatus.FAILED
    event.error_message = error
    log_audit(db, actor=None, action='WEBHOOK_FAILED', metadata={'event_id': event_id, 'error': error})
    logger.error('webhook.failed event=%s error=%s', event_id, error)


def list_webhook_events(
    db: Session,
    *,
    source: WebhookSource | None = None,
    processed: bool | None = None,
    limit: int = 100,
) -> list[WebhookEvent]:
    stmt = select(WebhookEvent).order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc()).limit(limit)
    if source is not None:
        stmt = stmt.where(WebhookEvent.source == source)
    if processed is not None:
        stmt = stmt.where(WebhookEvent.processed.is_(processed))
    return db.execute(stmt).scalars().all()


def webhook_result_payload(result: WebhookResult) -> dict:
    body: dict = {'action': result.action, 'event_id': result.event_id}
    if result.reason:
        body['reason'] = result.reason
    if result.message:
        body['message'] = result.message
    po = result.purchase_order
    if po is not None:
        body['purchase_order'] = {
            'id': po.id,
            'external_ref': po.external_ref,
            'po_number': po.po_number,
            'origin_company_id': po.origin_company_id,
            'target_company_id': po.target_company_id,
            'original_amount': str(po.original_amount),
            'vendor_amount': str(po.vendor_amount),
            'margin_amount': str(po.margin_amount),
            'status': po.status.value,
        }
    return body
