import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import EntityNotFound, InvariantViolation
from app.metrics import scheduled_transitions_total
from app.models.ecm import RetentionPhase, TransitionStatus, TransitionTask
from app.services.collaborators import DocumentRecord, DocumentStore
from app.services.common import ensure_utc
from app.services.retention_catalog import CatalogEntry, RetentionCatalog
from app.services.transition_queue import UNRESOLVED_STATUSES, TransitionTasks

logger = logging.getLogger(__name__)

NEXT_PHASE = {
    RetentionPhase.active: RetentionPhase.semi_active,
    RetentionPhase.semi_active: RetentionPhase.final,
}


@dataclass(frozen=True)
class TransitionSpec:
    document_id: str
    current_phase: RetentionPhase
    target_phase: RetentionPhase
    retention_category: str
    scheduled_for: datetime


@dataclass
class ScheduleResult:
    examined: int = 0
    scheduled: int = 0
    skipped: int = 0
    task_ids: list[str] = field(default_factory=list)


@dataclass
class RescheduleResult:
    code: str
    updated: int = 0
    cancelled: int = 0
    unchanged: int = 0


def _start_date(document: DocumentRecord) -> datetime | None:
    start = document.uploaded_at or document.created_at
    return ensure_utc(start) if start is not None else None


def compute_next_transition(
    document: DocumentRecord,
    category: CatalogEntry | None,
    now: datetime,
    has_unresolved: bool = False,
) -> TransitionSpec | None:
    """Next due phase change for ``document``, or None.

    A task is only proposed once its boundary has passed and while the
    document has no pending, processing or failed task.
    """
    if category is None or has_unresolved:
        return None
    target = NEXT_PHASE.get(RetentionPhase(document.phase))
    if target is None:
        return None
    start = _start_date(document)
    if start is None:
        return None
    boundary = category.boundary(start, target)
    if ensure_utc(now) < boundary:
        return None
    return TransitionSpec(
        document_id=document.id,
        current_phase=RetentionPhase(document.phase),
        target_phase=target,
        retention_category=category.code,
        scheduled_for=boundary,
    )


def _unresolved_document_ids(db: Session) -> set[str]:
    rows = db.scalars(
        select(TransitionTask.document_id).where(
            TransitionTask.status.in_(UNRESOLVED_STATUSES)
        )
    ).all()
    return {str(row) for row in rows}


def schedule_transitions(
    db: Session,
    store: DocumentStore,
    catalog: RetentionCatalog,
    now: datetime,
) -> ScheduleResult:
    result = ScheduleResult()
    unresolved = _unresolved_document_ids(db)
    documents = store.query(
        {"phases": [RetentionPhase.active, RetentionPhase.semi_active]}
    )
    for document in documents:
        result.examined += 1
        entry = catalog.get(document.retention_category)
        if entry is None:
            result.skipped += 1
            logger.warning(
                "Document %s has unknown retention category %s",
                document.id,
                document.retention_category,
                extra={"document_id": document.id},
            )
            continue
        spec = compute_next_transition(
            document, entry, now, has_unresolved=document.id in unresolved
        )
        if spec is None:
            continue
        try:
            task = TransitionTasks.enqueue(db, spec)
        except InvariantViolation:
            result.skipped += 1
            continue
        unresolved.add(document.id)
        result.scheduled += 1
        result.task_ids.append(str(task.id))
        scheduled_transitions_total.labels(spec.target_phase.value).inc()
    logger.info(
        "Scheduled %d transitions (%d documents examined, %d skipped)",
        result.scheduled,
        result.examined,
        result.skipped,
    )
    return result


def reschedule_category(
    db: Session,
    code: str,
    store: DocumentStore,
    catalog: RetentionCatalog,
    now: datetime,
) -> RescheduleResult:
    """Recompute ``scheduled_for`` of pending tasks after a category edit.

    Pending tasks whose new boundary lies in the future are removed; the
    scheduler will propose them again once they are due. Tasks in any other
    state are left alone.
    """
    entry = catalog.get(code)
    if entry is None:
        raise EntityNotFound("retention category", code)
    result = RescheduleResult(code=code)
    tasks = db.scalars(
        select(TransitionTask).where(
            TransitionTask.retention_category == code,
            TransitionTask.status == TransitionStatus.pending,
        )
    ).all()
    for task in tasks:
        try:
            document = store.get(str(task.document_id))
        except EntityNotFound:
            logger.warning(
                "Pending task %s references missing document %s",
                task.id,
                task.document_id,
                extra={"task_id": task.id},
            )
            result.unchanged += 1
            continue
        start = _start_date(document)
        if start is None:
            result.unchanged += 1
            continue
        boundary = entry.boundary(start, task.target_phase)
        if boundary > ensure_utc(now):
            db.delete(task)
            result.cancelled += 1
        elif boundary != task.scheduled_for:
            task.scheduled_for = boundary
            result.updated += 1
        else:
            result.unchanged += 1
    db.flush()
    logger.info(
        "Rescheduled category %s: %d updated, %d cancelled",
        code,
        result.updated,
        result.cancelled,
    )
    return result
