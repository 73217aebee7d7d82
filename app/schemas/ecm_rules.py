from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.ecm import ClassificationActionType, ConditionLogic, RunFrequency


# ---------------------------------------------------------------------------
# ClassificationRule
# ---------------------------------------------------------------------------


class RuleCondition(BaseModel):
    criteria: str
    operator: str
    value: str


class RuleAction(BaseModel):
    action: str
    value: str


class ClassificationRuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: int = 100
    is_active: bool = True
    conditions: list[RuleCondition]
    condition_logic: str = "and"
    actions: list[RuleAction]
    run_on_upload: bool = True


class ClassificationRuleCreate(ClassificationRuleBase):
    pass


class ClassificationRuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    priority: int | None = None
    is_active: bool | None = None
    conditions: list[RuleCondition] | None = None
    condition_logic: str | None = None
    actions: list[RuleAction] | None = None
    run_on_upload: bool | None = None


class ClassificationRuleRead(ClassificationRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    condition_logic: ConditionLogic
    documents_classified: int
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RunRuleRequest(BaseModel):
    document_ids: list[UUID] | None = None


class RunRuleResult(BaseModel):
    rule_id: UUID
    documents_changed: int


class AppliedActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    rule_name: str
    priority: int
    action: ClassificationActionType
    value: str


class ClassifyDocumentRequest(BaseModel):
    on_upload: bool = False


class ClassifyDocumentResult(BaseModel):
    document_id: UUID
    applied: list[AppliedActionRead]
    changed: bool


# ---------------------------------------------------------------------------
# AutoArchiveRule
# ---------------------------------------------------------------------------


class AutoArchiveRuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: int = 100
    is_active: bool = True
    source_folder: str | None = None
    source_type: str | None = None
    source_status: str | None = None
    source_age_days: int | None = None
    source_tags: list[str] | None = None
    target_folder: str | None = None
    target_status: str | None = None
    target_locked: bool = False
    run_frequency: str = "weekly"


class AutoArchiveRuleCreate(AutoArchiveRuleBase):
    pass


class AutoArchiveRuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    priority: int | None = None
    is_active: bool | None = None
    source_folder: str | None = None
    source_type: str | None = None
    source_status: str | None = None
    source_age_days: int | None = None
    source_tags: list[str] | None = None
    target_folder: str | None = None
    target_status: str | None = None
    target_locked: bool | None = None
    run_frequency: str | None = None


class AutoArchiveRuleRead(AutoArchiveRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_frequency: RunFrequency
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    documents_processed: int
    created_at: datetime
    updated_at: datetime


class AutoArchiveRunResult(BaseModel):
    rule_id: UUID
    documents_processed: int
