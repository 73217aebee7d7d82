from __future__ import annotations

import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.errors import CollaboratorFailure
from app.metrics import rule_matches_total
from app.models.ecm import AutoArchiveRule, RetentionPhase, RunFrequency
from app.schemas.ecm_rules import AutoArchiveRuleCreate, AutoArchiveRuleUpdate
from app.services.collaborators import SYSTEM_ACTOR, AuditRecord, Collaborators
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.response import ListResponseMixin
from app.services.rule_engine import (
    auto_archive_matches,
    auto_archive_patch,
    next_run_after,
    validate_auto_archive_rule,
)

logger = logging.getLogger(__name__)

_RULE_FIELDS = (
    "source_folder",
    "source_type",
    "source_status",
    "source_age_days",
    "source_tags",
    "target_folder",
    "target_status",
    "target_locked",
    "run_frequency",
)


# ---------------------------------------------------------------------------
# AutoArchiveRules
# ---------------------------------------------------------------------------


class AutoArchiveRules(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: AutoArchiveRuleCreate) -> AutoArchiveRule:
        data = payload.model_dump()
        data["run_frequency"] = validate_auto_archive_rule(data)
        rule = AutoArchiveRule(**data)
        db.add(rule)
        db.flush()
        db.refresh(rule)
        logger.info("Created auto-archive rule %s", rule.id)
        return rule

    @staticmethod
    def get(db: Session, rule_id: str) -> AutoArchiveRule:
        rule = db.get(AutoArchiveRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Auto-archive rule not found")
        return rule

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None,
        run_frequency: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[AutoArchiveRule]:
        stmt = select(AutoArchiveRule)
        if is_active is None:
            stmt = stmt.where(AutoArchiveRule.is_active.is_(True))
        else:
            stmt = stmt.where(AutoArchiveRule.is_active == is_active)
        if run_frequency is not None:
            try:
                frequency = RunFrequency(run_frequency)
            except ValueError:
                raise HTTPException(
                    status_code=400, detail=f"Invalid run_frequency: {run_frequency}"
                )
            stmt = stmt.where(AutoArchiveRule.run_frequency == frequency)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "priority": AutoArchiveRule.priority,
                "name": AutoArchiveRule.name,
                "next_run_at": AutoArchiveRule.next_run_at,
                "created_at": AutoArchiveRule.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, rule_id: str, payload: AutoArchiveRuleUpdate
    ) -> AutoArchiveRule:
        rule = db.get(AutoArchiveRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Auto-archive rule not found")
        data = payload.model_dump(exclude_unset=True)
        merged = {key: getattr(rule, key) for key in _RULE_FIELDS}
        merged.update(data)
        frequency = validate_auto_archive_rule(merged)
        if "run_frequency" in data:
            data["run_frequency"] = frequency
            if rule.last_run_at is not None:
                data["next_run_at"] = next_run_after(rule.last_run_at, frequency)
        for key, value in data.items():
            setattr(rule, key, value)
        db.flush()
        db.refresh(rule)
        logger.info("Updated auto-archive rule %s", rule.id)
        return rule

    @staticmethod
    def delete(db: Session, rule_id: str) -> None:
        rule = db.get(AutoArchiveRule, coerce_uuid(rule_id))
        if not rule:
            raise HTTPException(status_code=404, detail="Auto-archive rule not found")
        rule.is_active = False
        db.flush()
        logger.info("Soft-deleted auto-archive rule %s", rule_id)

    @staticmethod
    def run_rule(
        db: Session,
        rule_id: str,
        collaborators: Collaborators,
        now: datetime,
        actor_id: str = SYSTEM_ACTOR,
    ) -> int:
        """Apply one rule's target effects and return the documents changed."""
        rule = AutoArchiveRules.get(db, rule_id)
        filters = {"phases": [RetentionPhase.active, RetentionPhase.semi_active]}
        if rule.source_folder:
            filters["folder"] = rule.source_folder
        if rule.source_type:
            filters["document_type"] = rule.source_type
        if rule.source_status:
            filters["status"] = rule.source_status

        processed = 0
        for document in collaborators.store.query(filters):
            if document.is_locked:
                continue
            if not auto_archive_matches(rule, document, now):
                continue
            patch = auto_archive_patch(rule, document)
            if not patch:
                continue
            outcome = "applied"
            detail = {"rule_id": str(rule.id), "patch": dict(patch)}
            try:
                collaborators.store.update(document.id, patch)
                processed += 1
                rule_matches_total.labels(kind="auto_archive").inc()
            except CollaboratorFailure as exc:
                logger.warning(
                    "Auto-archive rule %s could not update document %s: %s",
                    rule.id,
                    document.id,
                    exc,
                )
                outcome = "failed"
                detail["error"] = str(exc)
            collaborators.audit.record(
                AuditRecord(
                    action="rule.auto_archived",
                    document_id=document.id,
                    actor_id=actor_id,
                    timestamp=now,
                    outcome=outcome,
                    detail=detail,
                )
            )

        rule.documents_processed = (rule.documents_processed or 0) + processed
        rule.last_run_at = now
        rule.next_run_at = next_run_after(now, rule.run_frequency)
        db.flush()
        logger.info("Auto-archive rule %s processed %d documents", rule.id, processed)
        return processed

    @staticmethod
    def run_due_rules(
        db: Session, collaborators: Collaborators, now: datetime
    ) -> dict[str, int]:
        due = db.scalars(
            select(AutoArchiveRule)
            .where(AutoArchiveRule.is_active.is_(True))
            .where(
                or_(
                    AutoArchiveRule.next_run_at.is_(None),
                    AutoArchiveRule.next_run_at <= now,
                )
            )
            .order_by(
                AutoArchiveRule.priority,
                AutoArchiveRule.created_at,
                AutoArchiveRule.id,
            )
        ).all()
        results: dict[str, int] = {}
        for rule in due:
            results[str(rule.id)] = AutoArchiveRules.run_rule(
                db, str(rule.id), collaborators, now
            )
        return results


auto_archive_rules = AutoArchiveRules()
