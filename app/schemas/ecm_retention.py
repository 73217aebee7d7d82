from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.ecm import FinalDisposition


# ---------------------------------------------------------------------------
# RetentionCategory
# ---------------------------------------------------------------------------


class RetentionCategoryBase(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    active_phase_years: int
    semi_active_phase_years: int
    final_disposition: str
    sample_percentage: int | None = None
    sample_criteria: str | None = None
    legal_reference: str | None = None
    is_active: bool = True


class RetentionCategoryCreate(RetentionCategoryBase):
    pass


class RetentionCategoryUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    active_phase_years: int | None = None
    semi_active_phase_years: int | None = None
    final_disposition: str | None = None
    sample_percentage: int | None = None
    sample_criteria: str | None = None
    legal_reference: str | None = None
    is_active: bool | None = None


class RetentionCategoryRead(RetentionCategoryBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    final_disposition: FinalDisposition
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Reschedule
# ---------------------------------------------------------------------------


class RescheduleResultRead(BaseModel):
    code: str
    updated: int
    cancelled: int
    unchanged: int
