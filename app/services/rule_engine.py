"""Pure evaluation of classification and auto-archive rules.

Nothing here touches the database or a collaborator. Callers pass an
immutable ``DocumentRecord``, the rules and ``now``; the functions return
what should happen and the services apply it.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.errors import ValidationError
from app.models.ecm import (
    AutoArchiveRule,
    ClassificationActionType,
    ClassificationCriteria,
    ClassificationRule,
    ConditionLogic,
    ConditionOperator,
    RunFrequency,
)
from app.services.collaborators import DocumentRecord
from app.services.common import add_months, ensure_utc

NUMERIC_OPERATORS = frozenset(
    {ConditionOperator.greater_than, ConditionOperator.less_than}
)

_ACTION_FIELDS = {
    ClassificationActionType.set_type: "document_type",
    ClassificationActionType.move_folder: "folder",
    ClassificationActionType.set_retention: "retention_category",
}


# ---------------------------------------------------------------------------
# Rule values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    criteria: ClassificationCriteria
    operator: ConditionOperator
    value: str

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "Condition":
        try:
            criteria = ClassificationCriteria(data.get("criteria"))
        except ValueError:
            raise ValidationError(
                f"Invalid criteria: {data.get('criteria')}", field="conditions"
            )
        try:
            operator = ConditionOperator(data.get("operator"))
        except ValueError:
            raise ValidationError(
                f"Invalid operator: {data.get('operator')}", field="conditions"
            )
        value = data.get("value")
        if value is None or str(value).strip() == "":
            raise ValidationError("Condition value is required", field="conditions")
        return cls(criteria=criteria, operator=operator, value=str(value))

    def to_dict(self) -> dict[str, str]:
        return {
            "criteria": self.criteria.value,
            "operator": self.operator.value,
            "value": self.value,
        }


@dataclass(frozen=True)
class Action:
    action: ClassificationActionType
    value: str

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "Action":
        try:
            action = ClassificationActionType(data.get("action"))
        except ValueError:
            raise ValidationError(
                f"Invalid action: {data.get('action')}", field="actions"
            )
        value = data.get("value")
        if value is None or str(value).strip() == "":
            raise ValidationError("Action value is required", field="actions")
        return cls(action=action, value=str(value).strip())

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action.value, "value": self.value}


@dataclass(frozen=True)
class RuleDefinition:
    id: str
    name: str
    priority: int
    conditions: tuple[Condition, ...]
    actions: tuple[Action, ...]
    condition_logic: ConditionLogic = ConditionLogic.and_
    is_active: bool = True
    run_on_upload: bool = True

    @classmethod
    def from_model(cls, rule: ClassificationRule) -> "RuleDefinition":
        return cls(
            id=str(rule.id),
            name=rule.name,
            priority=rule.priority,
            conditions=tuple(Condition.parse(c) for c in rule.conditions or ()),
            actions=tuple(Action.parse(a) for a in rule.actions or ()),
            condition_logic=ConditionLogic(rule.condition_logic),
            is_active=bool(rule.is_active),
            run_on_upload=bool(rule.run_on_upload),
        )


@dataclass(frozen=True)
class AppliedAction:
    rule_id: str
    rule_name: str
    priority: int
    action: ClassificationActionType
    value: str


def validate_rule(
    conditions: Sequence[dict[str, Any]] | None,
    actions: Sequence[dict[str, Any]] | None,
    condition_logic: str | ConditionLogic | None = ConditionLogic.and_,
    known_categories: Iterable[str] | None = None,
) -> tuple[tuple[Condition, ...], tuple[Action, ...], ConditionLogic]:
    """Parse and check a rule definition, raising ``ValidationError``."""
    if not conditions:
        raise ValidationError("A rule needs at least one condition", field="conditions")
    if not actions:
        raise ValidationError("A rule needs at least one action", field="actions")
    try:
        logic = ConditionLogic(condition_logic or ConditionLogic.and_)
    except ValueError:
        raise ValidationError(
            f"Invalid condition_logic: {condition_logic}", field="condition_logic"
        )

    parsed_conditions = tuple(Condition.parse(c) for c in conditions)
    for condition in parsed_conditions:
        if condition.operator in NUMERIC_OPERATORS:
            expected = condition.value
            if condition.criteria == ClassificationCriteria.metadata:
                _, _, expected = condition.value.partition("=")
            if _as_number(expected) is None:
                raise ValidationError(
                    f"{condition.operator.value} needs a numeric value, "
                    f"got {condition.value!r}",
                    field="conditions",
                )
        if condition.operator == ConditionOperator.matches:
            try:
                re.compile(condition.value)
            except re.error as exc:
                raise ValidationError(
                    f"Invalid pattern {condition.value!r}: {exc}", field="conditions"
                )

    parsed_actions = tuple(Action.parse(a) for a in actions)
    if known_categories is not None:
        known = set(known_categories)
        for action in parsed_actions:
            if (
                action.action == ClassificationActionType.set_retention
                and action.value not in known
            ):
                raise ValidationError(
                    f"Unknown retention category: {action.value}", field="actions"
                )
    return parsed_conditions, parsed_actions, logic


# ---------------------------------------------------------------------------
# Condition evaluation
# ---------------------------------------------------------------------------


def document_extension(document: DocumentRecord) -> str | None:
    if document.extension:
        return document.extension.lower().lstrip(".")
    name = document.filename or ""
    if "." not in name.strip("."):
        return None
    return name.rsplit(".", 1)[1].lower()


def age_in_days(document: DocumentRecord, now: datetime) -> int | None:
    created = document.created_at or document.uploaded_at
    if created is None:
        return None
    return (ensure_utc(now) - ensure_utc(created)).days


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _compare(operator: ConditionOperator, actual: Any, expected: str) -> bool:
    if operator in NUMERIC_OPERATORS:
        left = _as_number(actual)
        right = _as_number(expected)
        if left is None or right is None:
            return False
        if operator == ConditionOperator.greater_than:
            return left > right
        return left < right

    if actual is None:
        return False
    text = str(actual).casefold()
    wanted = expected.casefold()
    if operator == ConditionOperator.contains:
        return wanted in text
    if operator == ConditionOperator.equals:
        return text == wanted
    if operator == ConditionOperator.starts_with:
        return text.startswith(wanted)
    if operator == ConditionOperator.ends_with:
        return text.endswith(wanted)
    if operator == ConditionOperator.matches:
        try:
            return re.search(expected, str(actual), re.IGNORECASE) is not None
        except re.error:
            return False
    return False


def evaluate_condition(
    condition: Condition, document: DocumentRecord, now: datetime
) -> bool:
    numeric = condition.operator in NUMERIC_OPERATORS
    criteria = condition.criteria
    if criteria == ClassificationCriteria.metadata:
        key, sep, expected = condition.value.partition("=")
        key = key.strip()
        if not sep:
            return document.metadata.get(key) not in (None, "")
        return _compare(
            condition.operator, document.metadata.get(key), expected.strip()
        )
    if criteria == ClassificationCriteria.extension and not numeric:
        return _compare(
            condition.operator,
            document_extension(document),
            condition.value.lower().lstrip("."),
        )

    if criteria == ClassificationCriteria.filename:
        actual = document.filename
    elif criteria == ClassificationCriteria.content:
        actual = document.content_text
    elif criteria == ClassificationCriteria.extension:
        actual = document_extension(document)
    elif criteria == ClassificationCriteria.size:
        actual = document.size_bytes
    elif numeric:
        actual = age_in_days(document, now)
    else:
        created = document.created_at or document.uploaded_at
        actual = ensure_utc(created).date().isoformat() if created else None
    return _compare(condition.operator, actual, condition.value)


def rule_matches(rule: RuleDefinition, document: DocumentRecord, now: datetime) -> bool:
    if not rule.conditions:
        return False
    results = (evaluate_condition(c, document, now) for c in rule.conditions)
    if rule.condition_logic == ConditionLogic.or_:
        return any(results)
    return all(results)


def classify(
    document: DocumentRecord,
    rules: Iterable[RuleDefinition],
    now: datetime,
    on_upload: bool = False,
) -> list[AppliedAction]:
    """Actions of every active matching rule, by priority then declaration.

    Rules with equal priority keep the order they were given in.
    """
    applied: list[AppliedAction] = []
    for rule in sorted(rules, key=lambda r: r.priority):
        if not rule.is_active or (on_upload and not rule.run_on_upload):
            continue
        if not rule_matches(rule, document, now):
            continue
        for action in rule.actions:
            applied.append(
                AppliedAction(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    priority=rule.priority,
                    action=action.action,
                    value=action.value,
                )
            )
    return applied


def effective_actions(
    document: DocumentRecord, actions: Iterable[AppliedAction]
) -> list[AppliedAction]:
    """Drop actions that would leave the document as it already is.

    Later actions see the effect of earlier ones, so two rules setting the
    same folder only count once.
    """
    tags = list(document.tags)
    fields = {
        ClassificationActionType.set_type: document.document_type,
        ClassificationActionType.move_folder: document.folder,
        ClassificationActionType.set_retention: document.retention_category,
    }
    effective = []
    for applied in actions:
        if applied.action == ClassificationActionType.add_tag:
            if applied.value in tags:
                continue
            tags.append(applied.value)
        else:
            if fields[applied.action] == applied.value:
                continue
            fields[applied.action] = applied.value
        effective.append(applied)
    return effective


def actions_to_patch(
    document: DocumentRecord, actions: Iterable[AppliedAction]
) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    tags = list(document.tags)
    for applied in actions:
        if applied.action == ClassificationActionType.add_tag:
            if applied.value not in tags:
                tags.append(applied.value)
                patch["tags"] = list(tags)
        else:
            patch[_ACTION_FIELDS[applied.action]] = applied.value
    return patch


# ---------------------------------------------------------------------------
# Auto-archive rules
# ---------------------------------------------------------------------------


def validate_auto_archive_rule(data: dict[str, Any]) -> RunFrequency:
    has_source = any(
        data.get(key) not in (None, "", [])
        for key in (
            "source_folder",
            "source_type",
            "source_status",
            "source_age_days",
            "source_tags",
        )
    )
    if not has_source:
        raise ValidationError(
            "An auto-archive rule needs at least one source criterion",
            field="source",
        )
    age = data.get("source_age_days")
    if age is not None and age < 0:
        raise ValidationError(
            "source_age_days must be zero or more", field="source_age_days"
        )
    if not (
        data.get("target_folder") or data.get("target_status") or data.get("target_locked")
    ):
        raise ValidationError(
            "An auto-archive rule needs at least one target effect", field="target"
        )
    try:
        return RunFrequency(data.get("run_frequency") or RunFrequency.weekly)
    except ValueError:
        raise ValidationError(
            f"Invalid run_frequency: {data.get('run_frequency')}",
            field="run_frequency",
        )


def auto_archive_matches(
    rule: AutoArchiveRule, document: DocumentRecord, now: datetime
) -> bool:
    if rule.source_folder and document.folder != rule.source_folder:
        return False
    if rule.source_type and document.document_type != rule.source_type:
        return False
    if rule.source_status and document.status != rule.source_status:
        return False
    if rule.source_age_days is not None:
        age = age_in_days(document, now)
        if age is None or age < rule.source_age_days:
            return False
    if rule.source_tags:
        if not all(tag in document.tags for tag in rule.source_tags):
            return False
    return True


def auto_archive_patch(rule: AutoArchiveRule, document: DocumentRecord) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    if rule.target_folder and document.folder != rule.target_folder:
        patch["folder"] = rule.target_folder
    if rule.target_status and document.status != rule.target_status:
        patch["status"] = rule.target_status
    if rule.target_locked and not document.is_locked:
        patch["is_locked"] = True
    return patch


def next_run_after(moment: datetime, frequency: RunFrequency | str) -> datetime:
    frequency = RunFrequency(frequency)
    if frequency == RunFrequency.daily:
        return moment + timedelta(days=1)
    if frequency == RunFrequency.weekly:
        return moment + timedelta(days=7)
    return add_months(moment, 1)
