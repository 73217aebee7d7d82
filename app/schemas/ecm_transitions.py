from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.ecm import RetentionPhase, TransitionStatus


class TransitionTaskCreate(BaseModel):
    document_id: UUID
    current_phase: str
    target_phase: str
    retention_category: str
    scheduled_for: datetime


class TransitionTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    current_phase: RetentionPhase
    target_phase: RetentionPhase
    retention_category: str
    scheduled_for: datetime
    status: TransitionStatus
    error: str | None = None
    attempts: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TaskOutcomeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: str
    status: str
    error: str | None = None


class QueueRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    processed: int
    completed: int
    failed: int
    skipped: int
    errors: dict[str, str]


class ScheduleRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    examined: int
    scheduled: int
    skipped: int
    task_ids: list[str]


class RecoverRead(BaseModel):
    recovered: int
