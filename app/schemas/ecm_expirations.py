from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.ecm import FinalDisposition, RetentionPhase


class ExpiringDocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: str
    title: str
    filename: str
    retention_category: str
    category_name: str
    final_disposition: FinalDisposition
    phase: RetentionPhase
    uploaded_at: datetime
    expiration_date: datetime
    days_until_expiration: int


class ExpirationSummary(BaseModel):
    overdue: int
    urgent: int
    upcoming: int
    future: int
    total: int


class ExpirationBucketsRead(BaseModel):
    now: datetime
    summary: ExpirationSummary
    overdue: list[ExpiringDocumentRead]
    urgent: list[ExpiringDocumentRead]
    upcoming: list[ExpiringDocumentRead]
    future: list[ExpiringDocumentRead]


class ExtendRetentionRequest(BaseModel):
    additional_years: int = Field(ge=1, le=99)
    actor_id: str | None = None


class ExtendRetentionResult(BaseModel):
    document_id: str
    retention_extended_years: int
