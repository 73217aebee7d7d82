from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.ecm import ReminderType


class DocumentReminderBase(BaseModel):
    document_id: UUID
    reminder_type: str = "custom"
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    reminder_date: datetime
    days_before_alert: int = 0
    repeat_interval_days: int | None = None
    notify_email: bool = True
    notify_in_app: bool = True
    notify_users: list[str] | None = None
    is_active: bool = True


class DocumentReminderCreate(DocumentReminderBase):
    created_by: str = Field(min_length=1, max_length=120)


class DocumentReminderUpdate(BaseModel):
    reminder_type: str | None = None
    title: str | None = None
    description: str | None = None
    reminder_date: datetime | None = None
    days_before_alert: int | None = None
    repeat_interval_days: int | None = None
    notify_email: bool | None = None
    notify_in_app: bool | None = None
    notify_users: list[str] | None = None
    is_active: bool | None = None


class DocumentReminderRead(DocumentReminderBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reminder_type: ReminderType
    created_by: str
    last_notified_at: datetime | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    parent_reminder_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(min_length=1, max_length=120)


class AcknowledgeResult(BaseModel):
    reminder: DocumentReminderRead
    spawned: DocumentReminderRead | None = None
