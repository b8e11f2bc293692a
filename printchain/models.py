from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class CompanyKind(str, Enum):
    BROKER = 'BROKER'
    INTERMEDIARY = 'INTERMEDIARY'
    MANUFACTURER = 'MANUFACTURER'
    CUSTOMER = 'CUSTOMER'


class AllocationMode(str, Enum):
    NORMAL = 'NORMAL'
    MANUFACTURER_SUPPLIES_PAPER = 'MANUFACTURER_SUPPLIES_PAPER'
    INTERMEDIARY_WAIVES_PAPER_MARGIN = 'INTERMEDIARY_WAIVES_PAPER_MARGIN'


class PurchaseOrderStatus(str, Enum):
    PENDING = 'PENDING'
    ACCEPTED = 'ACCEPTED'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class PurchaseOrderSource(str, Enum):
    CASCADE = 'CASCADE'
    WEBHOOK = 'WEBHOOK'


class InvoiceStatus(str, Enum):
    DRAFT = 'DRAFT'
    SENT = 'SENT'
    PAID = 'PAID'


class SyncTrigger(str, Enum):
    PO_UPDATE = 'PO_UPDATE'
    MANUAL_AUDIT = 'MANUAL_AUDIT'
    JOB_OVERRIDE = 'JOB_OVERRIDE'


class WebhookSource(str, Enum):
    STRUCTURED = 'STRUCTURED'
    EMAIL = 'EMAIL'


class WebhookEventStatus(str, Enum):
    RECEIVED = 'RECEIVED'
    VALIDATED = 'VALIDATED'
    PARSED = 'PARSED'
    DEDUP_CHECKED = 'DEDUP_CHECKED'
    CREATED = 'CREATED'
    DUPLICATE = 'DUPLICATE'
    REJECTED = 'REJECTED'
    PARSE_FAILED = 'PARSE_FAILED'
    FAILED = 'FAILED'


class TaskKind(str, Enum):
    GENERATE_CASCADE = 'GENERATE_CASCADE'
    GENERATE_INVOICES = 'GENERATE_INVOICES'
    AUDIT_REPAIR = 'AUDIT_REPAIR'
    PROCESS_WEBHOOK = 'PROCESS_WEBHOOK'
    SEND_NOTIFICATION = 'SEND_NOTIFICATION'


class TaskStatus(str, Enum):
    QUEUED = 'QUEUED'
    RUNNING = 'RUNNING'
    DONE = 'DONE'
    FAILED = 'FAILED'


class Company(Base):
    __tablename__ = 'companies'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[CompanyKind] = mapped_column(SQLEnum(CompanyKind, name='company_kind'), nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    customer_code: Mapped[str | None] = mapped_column(String(32), unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RateCardEntry(Base):
    __tablename__ = 'rate_card_entries'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    size_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    manufacturer_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    paper_cost_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    paper_charged_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    paper_weight_per_1000: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    intermediary_invoice_per_m: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    broker_invoice_per_m: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class Job(Base):
    __tablename__ = 'jobs'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    job_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey('companies.id'), nullable=False, index=True)
    size_name: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    customer_po_number: Mapped[str | None] = mapped_column(String(64))
    allocation_mode: Mapped[AllocationMode] = mapped_column(
        SQLEnum(AllocationMode, name='allocation_mode'), nullable=False, default=AllocationMode.NORMAL
    )

    customer_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    standard_customer_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    customer_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False)
    broker_margin_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    broker_margin_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    intermediary_print_margin_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    intermediary_print_margin_total: Mapped[Decimal] = mapped_column(
        Numeric(18, 7), nullable=False, default=Decimal('0')
    )
    intermediary_paper_margin_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    intermediary_paper_margin_total: Mapped[Decimal] = mapped_column(
        Numeric(18, 7), nullable=False, default=Decimal('0')
    )
    intermediary_total_margin_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    intermediary_total_margin_total: Mapped[Decimal] = mapped_column(
        Numeric(18, 7), nullable=False, default=Decimal('0')
    )
    intermediary_total_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    intermediary_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    manufacturer_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    manufacturer_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    paper_cost_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    paper_cost_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    paper_charged_cpm: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    paper_charged_total: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    paper_weight_per_1000: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    paper_weight_total: Mapped[Decimal | None] = mapped_column(Numeric(18, 7))
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    undercharge_amount: Mapped[Decimal] = mapped_column(Numeric(18, 7), nullable=False, default=Decimal('0'))
    is_custom_pricing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    financials_computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class PurchaseOrder(Base):
    __tablename__ = 'purchase_orders'
    __table_args__ = (
        UniqueConstraint('job_id', 'origin_company_id', 'target_company_id', name='uq_purchase_orders_job_leg'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey('jobs.id', ondelete='CASCADE'), index=True)
    origin_company_id: Mapped[str] = mapped_column(ForeignKey('companies.id'), nullable=False)
    target_company_id: Mapped[str] = mapped_column(ForeignKey('companies.id'), nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vendor_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    margin_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0'))
    po_number: Mapped[str | None] = mapped_column(String(64))
    reference_po_number: Mapped[str | None] = mapped_column(String(64))
    external_ref: Mapped[str | None] = mapped_column(String(128), unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[PurchaseOrderStatus] = mapped_column(
        SQLEnum(PurchaseOrderStatus, name='purchase_order_status'),
        nullable=False,
        default=PurchaseOrderStatus.PENDING,
    )
    source: Mapped[PurchaseOrderSource] = mapped_column(
        SQLEnum(PurchaseOrderSource, name='purchase_order_source'),
        nullable=False,
        default=PurchaseOrderSource.CASCADE,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class Invoice(Base):
    __tablename__ = 'invoices'
    __table_args__ = (
        UniqueConstraint('job_id', 'from_company_id', 'to_company_id', name='uq_invoices_job_pair'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    invoice_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    job_id: Mapped[int] = mapped_column(ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False, index=True)
    purchase_order_id: Mapped[int | None] = mapped_column(ForeignKey('purchase_orders.id', ondelete='SET NULL'))
    from_company_id: Mapped[str] = mapped_column(ForeignKey('companies.id'), nullable=False)
    to_company_id: Mapped[str] = mapped_column(ForeignKey('companies.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus, name='invoice_status'),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SyncLog(Base):
    __tablename__ = 'sync_logs'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    trigger: Mapped[SyncTrigger] = mapped_column(SQLEnum(SyncTrigger, name='sync_trigger'), nullable=False)
    job_id: Mapped[int | None] = mapped_column(ForeignKey('jobs.id', ondelete='SET NULL'), index=True)
    purchase_order_id: Mapped[int | None] = mapped_column(ForeignKey('purchase_orders.id', ondelete='SET NULL'))
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey('invoices.id', ondelete='SET NULL'))
    field: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)
    changed_by: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookEvent(Base):
    __tablename__ = 'webhook_events'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source: Mapped[WebhookSource] = mapped_column(SQLEnum(WebhookSource, name='webhook_source'), nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        SQLEnum(WebhookEventStatus, name='webhook_event_status'),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    attachment_filename: Mapped[str | None] = mapped_column(Text)
    attachment_content: Mapped[bytes | None] = mapped_column(LargeBinary)
    reject_reason: Mapped[str | None] = mapped_column(String(64))
    error_message: Mapped[str | None] = mapped_column(Text)
    external_ref: Mapped[str | None] = mapped_column(String(128), index=True)
    purchase_order_id: Mapped[int | None] = mapped_column(ForeignKey('purchase_orders.id', ondelete='SET NULL'))
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class WorkTask(Base):
    __tablename__ = 'work_tasks'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    kind: Mapped[TaskKind] = mapped_column(SQLEnum(TaskKind, name='task_kind'), nullable=False, index=True)
    subject_key: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[TaskStatus] = mapped_column(
        SQLEnum(TaskStatus, name='task_status'),
        nullable=False,
        default=TaskStatus.QUEUED,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
