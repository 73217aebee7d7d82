from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import CollaboratorFailure
from app.metrics import rule_matches_total
from app.models.ecm import ClassificationRule, RetentionPhase
from app.schemas.ecm_rules import ClassificationRuleCreate, ClassificationRuleUpdate
from app.services.collaborators import SYSTEM_ACTOR, AuditRecord, Collaborators
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.response import ListResponseMixin
from app.services.retention_catalog import load_catalog
from app.services.rule_engine import (
    AppliedAction,
    RuleDefinition,
    actions_to_patch,
    classify,
    effective_actions,
    rule_matches,
    validate_rule,
)

logger = logging.getLogger(__name__)


@dataclass
class ClassificationOutcome:
    document_id: str
    applied: list[AppliedAction] = field(default_factory=list)
    effective: list[AppliedAction] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.effective)


def _validate_payload(db: Session, conditions, actions, condition_logic):
    return validate_rule(
        conditions,
        actions,
        condition_logic,
        known_categories=load_catalog(db).codes(),
    )


def _record_match(
    collaborators: Collaborators,
    rule_id: str,
    document_id: str,
    actions: list[AppliedAction],
    actor_id: str,
    now: datetime,
    outcome: str = "applied",
    error: str | None = None,
) -> None:
    detail = {
        "rule_id": rule_id,
        "actions": [{"action": a.action.value, "value": a.value} for a in actions],
    }
    if error:
        detail["error"] = error
    if outcome == "applied":
        rule_matches_total.labels(kind="classification").inc()
    collaborators.audit.record(
        AuditRecord(
            action="rule.matched",
            document_id=document_id,
            actor_id=actor_id,
            timestamp=now,
            outcome=outcome,
            detail=detail,
        )
    )


def _group_by_rule(actions: list[AppliedAction]) -> "OrderedDict[str, list[AppliedAction]]":
    grouped: OrderedDict[str, list[AppliedAction]] = OrderedDict()
    for applied in actions:
        grouped.setdefault(applied.rule_id, []).append(applied)
    return grouped


# ---------------------------------------------------------------------------
# ClassificationRules
# ---------------------------------------------------------------------------


class ClassificationRules(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: ClassificationRuleCreate) -> ClassificationRule:
        data = payload.model_dump()
        conditions, actions, logic = _validate_payload(
            db, data["conditions"], data["actions"], data["condition_logic"]
        )
        data["conditions"] = [c.to_dict() for c in conditions]
        data["actions"] = [a.to_dict() for a in actions]
        data["condition_logic"] = logic
        rule = ClassificationRule(**data)
        db.add(rule)
        db.flush()
        db.refresh(rule)
        logger.info("Created classification rule %s", rule.id)
        return rule

    @staticmethod
    def get(db: Session, rule_id: str) -> ClassificationRule:
        rule = db.get(ClassificationRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Classification rule not found")
        return rule

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None,
        run_on_upload: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[ClassificationRule]:
        stmt = select(ClassificationRule)
        if is_active is None:
            stmt = stmt.where(ClassificationRule.is_active.is_(True))
        else:
            stmt = stmt.where(ClassificationRule.is_active == is_active)
        if run_on_upload is not None:
            stmt = stmt.where(ClassificationRule.run_on_upload == run_on_upload)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "priority": ClassificationRule.priority,
                "name": ClassificationRule.name,
                "created_at": ClassificationRule.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, rule_id: str, payload: ClassificationRuleUpdate
    ) -> ClassificationRule:
        rule = db.get(ClassificationRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Classification rule not found")
        data = payload.model_dump(exclude_unset=True)
        if {"conditions", "actions", "condition_logic"} & set(data):
            conditions, actions, logic = _validate_payload(
                db,
                data.get("conditions", rule.conditions),
                data.get("actions", rule.actions),
                data.get("condition_logic", rule.condition_logic),
            )
            data["conditions"] = [c.to_dict() for c in conditions]
            data["actions"] = [a.to_dict() for a in actions]
            data["condition_logic"] = logic
        for key, value in data.items():
            setattr(rule, key, value)
        db.flush()
        db.refresh(rule)
        logger.info("Updated classification rule %s", rule.id)
        return rule

    @staticmethod
    def delete(db: Session, rule_id: str) -> None:
        rule = db.get(ClassificationRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Classification rule not found")
        rule.is_active = False
        db.flush()
        logger.info("Soft-deleted classification rule %s", rule_id)

    @staticmethod
    def active_rules(db: Session) -> list[RuleDefinition]:
        rows = db.scalars(
            select(ClassificationRule)
            .where(ClassificationRule.is_active.is_(True))
            .order_by(
                ClassificationRule.priority,
                ClassificationRule.created_at,
                ClassificationRule.id,
            )
        ).all()
        return [RuleDefinition.from_model(row) for row in rows]

    @staticmethod
    def run_rule(
        db: Session,
        rule_id: str,
        collaborators: Collaborators,
        now: datetime,
        document_ids: list[str] | None = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> int:
        """Re-run one rule and return how many documents it changed.

        Documents already carrying the rule's effects are left alone, so a
        second run over an unchanged set returns 0.
        """
        rule = ClassificationRules.get(db, rule_id)
        definition = RuleDefinition.from_model(rule)
        if document_ids is not None:
            filters = {"ids": [str(i) for i in document_ids]}
        else:
            filters = {"phases": [RetentionPhase.active, RetentionPhase.semi_active]}

        changed = 0
        for document in collaborators.store.query(filters):
            if not rule_matches(definition, document, now):
                continue
            applied = [
                AppliedAction(
                    rule_id=definition.id,
                    rule_name=definition.name,
                    priority=definition.priority,
                    action=action.action,
                    value=action.value,
                )
                for action in definition.actions
            ]
            effective = effective_actions(document, applied)
            if not effective:
                _record_match(
                    collaborators,
                    definition.id,
                    document.id,
                    applied,
                    actor_id,
                    now,
                    outcome="no_change",
                )
                continue
            try:
                collaborators.store.update(
                    document.id, actions_to_patch(document, effective)
                )
            except CollaboratorFailure as exc:
                logger.warning(
                    "Rule %s could not update document %s: %s",
                    rule.id,
                    document.id,
                    exc,
                )
                _record_match(
                    collaborators,
                    definition.id,
                    document.id,
                    effective,
                    actor_id,
                    now,
                    outcome="failed",
                    error=str(exc),
                )
                continue
            _record_match(
                collaborators, definition.id, document.id, effective, actor_id, now
            )
            changed += 1

        rule.documents_classified = (rule.documents_classified or 0) + changed
        rule.last_run_at = now
        db.flush()
        logger.info("Rule %s run changed %d documents", rule.id, changed)
        return changed

    @staticmethod
    def classify_document(
        db: Session,
        document_id: str,
        collaborators: Collaborators,
        now: datetime,
        on_upload: bool = False,
        actor_id: str = SYSTEM_ACTOR,
    ) -> ClassificationOutcome:
        document = collaborators.store.get(str(document_id))
        applied = classify(
            document, ClassificationRules.active_rules(db), now, on_upload=on_upload
        )
        outcome = ClassificationOutcome(document_id=document.id, applied=applied)
        if not applied:
            return outcome
        effective = effective_actions(document, applied)
        if effective:
            collaborators.store.update(
                document.id, actions_to_patch(document, effective)
            )
            outcome.effective = effective

        # One audit event per matched rule, whether or not it changed anything.
        changed_by_rule = _group_by_rule(effective)
        for rule_id, rule_actions in _group_by_rule(applied).items():
            rule = db.get(ClassificationRule, coerce_uuid(rule_id))
            changed = changed_by_rule.get(rule_id)
            if rule is not None:
                rule.last_run_at = now
                if changed:
                    rule.documents_classified = (rule.documents_classified or 0) + 1
            if changed:
                _record_match(collaborators, rule_id, document.id, changed, actor_id, now)
            else:
                _record_match(
                    collaborators,
                    rule_id,
                    document.id,
                    rule_actions,
                    actor_id,
                    now,
                    outcome="no_change",
                )
        db.flush()
        logger.info(
            "Classified document %s: %d rules matched, %d actions applied",
            document.id,
            len(_group_by_rule(applied)),
            len(effective),
        )
        return outcome

    @staticmethod
    def seed_from_file(db: Session, path: str | Path) -> int:
        """Insert rules from the rules file whose name is not stored yet."""
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        items = data.get("rules") if isinstance(data, dict) else data
        existing = set(db.scalars(select(ClassificationRule.name)).all())
        created = 0
        for item in items or []:
            if item.get("name") in existing:
                continue
            ClassificationRules.create(db, ClassificationRuleCreate(**item))
            created += 1
        if created:
            logger.info("Seeded %d classification rules from %s", created, path)
        return created


classification_rules = ClassificationRules()
