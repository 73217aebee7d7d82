import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.types import EpochMillis


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums: Retention calendar
# ---------------------------------------------------------------------------


class RetentionPhase(enum.Enum):
    active = "active"
    semi_active = "semi_active"
    final = "final"


class FinalDisposition(enum.Enum):
    destroy = "destroy"
    archive_permanent = "archive_permanent"
    sample = "sample"


# ---------------------------------------------------------------------------
# Enums: Rules
# ---------------------------------------------------------------------------


class ConditionLogic(enum.Enum):
    and_ = "and"
    or_ = "or"


class ClassificationCriteria(enum.Enum):
    filename = "filename"
    content = "content"
    extension = "extension"
    size = "size"
    date = "date"
    metadata = "metadata"


class ConditionOperator(enum.Enum):
    contains = "contains"
    equals = "equals"
    starts_with = "starts_with"
    ends_with = "ends_with"
    greater_than = "greater_than"
    less_than = "less_than"
    matches = "matches"


class ClassificationActionType(enum.Enum):
    add_tag = "add_tag"
    set_type = "set_type"
    move_folder = "move_folder"
    set_retention = "set_retention"


class RunFrequency(enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


# ---------------------------------------------------------------------------
# Enums: Transitions & reminders
# ---------------------------------------------------------------------------


class TransitionStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class ReminderType(enum.Enum):
    contract_renewal = "contract_renewal"
    license_expiry = "license_expiry"
    certification_renewal = "certification_renewal"
    document_review = "document_review"
    retention_expiry = "retention_expiry"
    custom = "custom"


class NotificationChannel(enum.Enum):
    email = "email"
    in_app = "in_app"


# ---------------------------------------------------------------------------
# Documents (metadata only, backing the default DocumentStore)
# ---------------------------------------------------------------------------


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_phase", "phase"),
        Index("ix_documents_retention_category", "retention_category"),
        Index("ix_documents_folder", "folder"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    extension: Mapped[str | None] = mapped_column(String(32))
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    content_text: Mapped[str | None] = mapped_column(Text)
    folder: Mapped[str | None] = mapped_column(String(500))
    document_type: Mapped[str | None] = mapped_column(String(80))
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="draft")
    phase: Mapped[RetentionPhase] = mapped_column(
        Enum(RetentionPhase), nullable=False, default=RetentionPhase.active
    )
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retention_category: Mapped[str | None] = mapped_column(String(40))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    retention_extended_years: Mapped[int] = mapped_column(Integer, default=0)
    expiry_notified_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    disposition_outcome: Mapped[str | None] = mapped_column(String(40))
    disposed_at: Mapped[datetime | None] = mapped_column(EpochMillis)

    created_at: Mapped[datetime] = mapped_column(
        EpochMillis, nullable=False, default=_utcnow
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        EpochMillis, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Retention Catalog: Categories
# ---------------------------------------------------------------------------


class RetentionCategory(Base):
    __tablename__ = "retention_categories"
    __table_args__ = (UniqueConstraint("code", name="uq_retention_categories_code"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    active_phase_years: Mapped[int] = mapped_column(Integer, nullable=False)
    semi_active_phase_years: Mapped[int] = mapped_column(Integer, nullable=False)
    final_disposition: Mapped[FinalDisposition] = mapped_column(
        Enum(FinalDisposition), nullable=False
    )
    sample_percentage: Mapped[int | None] = mapped_column(Integer)
    sample_criteria: Mapped[str | None] = mapped_column(Text)
    legal_reference: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Rules: Classification
# ---------------------------------------------------------------------------


class ClassificationRule(Base):
    __tablename__ = "classification_rules"
    __table_args__ = (Index("ix_classification_rules_priority", "priority"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # [{"criteria": ..., "operator": ..., "value": ...}]
    conditions: Mapped[list] = mapped_column(JSON, nullable=False)
    condition_logic: Mapped[ConditionLogic] = mapped_column(
        Enum(ConditionLogic), nullable=False, default=ConditionLogic.and_
    )
    # [{"action": ..., "value": ...}]
    actions: Mapped[list] = mapped_column(JSON, nullable=False)
    run_on_upload: Mapped[bool] = mapped_column(Boolean, default=True)
    documents_classified: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[datetime | None] = mapped_column(EpochMillis)

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Rules: Auto-archive
# ---------------------------------------------------------------------------


class AutoArchiveRule(Base):
    __tablename__ = "auto_archive_rules"
    __table_args__ = (
        Index("ix_auto_archive_rules_next_run_at", "next_run_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    source_folder: Mapped[str | None] = mapped_column(String(500))
    source_type: Mapped[str | None] = mapped_column(String(80))
    source_status: Mapped[str | None] = mapped_column(String(40))
    source_age_days: Mapped[int | None] = mapped_column(Integer)
    source_tags: Mapped[list | None] = mapped_column(JSON)

    target_folder: Mapped[str | None] = mapped_column(String(500))
    target_status: Mapped[str | None] = mapped_column(String(40))
    target_locked: Mapped[bool] = mapped_column(Boolean, default=False)

    run_frequency: Mapped[RunFrequency] = mapped_column(
        Enum(RunFrequency), nullable=False, default=RunFrequency.weekly
    )
    last_run_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    next_run_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    documents_processed: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Transitions: Queue
# ---------------------------------------------------------------------------


class TransitionTask(Base):
    __tablename__ = "transition_tasks"
    __table_args__ = (
        Index("ix_transition_tasks_document_id", "document_id"),
        Index("ix_transition_tasks_status", "status"),
        Index("ix_transition_tasks_scheduled_for", "scheduled_for"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    current_phase: Mapped[RetentionPhase] = mapped_column(
        Enum(RetentionPhase), nullable=False
    )
    target_phase: Mapped[RetentionPhase] = mapped_column(
        Enum(RetentionPhase), nullable=False
    )
    retention_category: Mapped[str] = mapped_column(String(40), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(EpochMillis, nullable=False)
    status: Mapped[TransitionStatus] = mapped_column(
        Enum(TransitionStatus), nullable=False, default=TransitionStatus.pending
    )
    error: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    completed_at: Mapped[datetime | None] = mapped_column(EpochMillis)

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class DocumentReminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_document_id", "document_id"),
        Index("ix_reminders_reminder_date", "reminder_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reminder_type: Mapped[ReminderType] = mapped_column(
        Enum(ReminderType), nullable=False, default=ReminderType.custom
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    reminder_date: Mapped[datetime] = mapped_column(EpochMillis, nullable=False)
    days_before_alert: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repeat_interval_days: Mapped[int | None] = mapped_column(Integer)
    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_in_app: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_users: Mapped[list | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_notified_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    acknowledged_at: Mapped[datetime | None] = mapped_column(EpochMillis)
    acknowledged_by: Mapped[str | None] = mapped_column(String(120))
    created_by: Mapped[str] = mapped_column(String(120), nullable=False)
    parent_reminder_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        EpochMillis, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# Audit (default AuditSink storage)
# ---------------------------------------------------------------------------


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_document_id", "document_id"),
        Index("ix_audit_events_action", "action"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(36))
    actor_id: Mapped[str] = mapped_column(String(120), nullable=False)
    outcome: Mapped[str] = mapped_column(String(40), nullable=False)
    detail: Mapped[dict | None] = mapped_column(JSON)
    occurred_at: Mapped[datetime] = mapped_column(EpochMillis, nullable=False)


# ---------------------------------------------------------------------------
# Notifications (default in-app NotificationSink storage)
# ---------------------------------------------------------------------------


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_id", "recipient_id"),
        Index("ix_notifications_is_read", "is_read"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    recipient_id: Mapped[str] = mapped_column(String(120), nullable=False)
    channel: Mapped[NotificationChannel] = mapped_column(
        Enum(NotificationChannel), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(EpochMillis, default=_utcnow)
