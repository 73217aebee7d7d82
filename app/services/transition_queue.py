"""Durable worklist of phase transitions and the runner that applies them.

State machine::

    pending -> processing -> completed | failed
    failed  -> pending        (retry)
    pending -> removed        (cancel)

Claiming a task is a compare-and-set on its status and is committed before
any collaborator is called, so a crash leaves the task in ``processing``.
``recover_interrupted`` turns those into ``failed`` instead of replaying an
irreversible disposition.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    CollaboratorFailure,
    CollaboratorTimeout,
    EntityNotFound,
    InvariantViolation,
    LifecycleError,
)
from app.metrics import collaborator_call_seconds, transition_tasks_total
from app.models.ecm import (
    FinalDisposition,
    RetentionPhase,
    TransitionStatus,
    TransitionTask,
)
from app.services.collaborators import SYSTEM_ACTOR, AuditRecord, Collaborators
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    utc_now,
)
from app.services.response import ListResponseMixin
from app.services.retention_catalog import CatalogEntry, RetentionCatalog, load_catalog

logger = logging.getLogger(__name__)

UNRESOLVED_STATUSES = (
    TransitionStatus.pending,
    TransitionStatus.processing,
    TransitionStatus.failed,
)


# ---------------------------------------------------------------------------
# Leases
# ---------------------------------------------------------------------------


class DocumentLeases:
    """Per-document exclusive leases held while collaborator calls run."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._held: dict[str, float] = {}

    def acquire(self, document_id: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._held.get(document_id)
            if expires_at is not None and expires_at > now:
                return False
            self._held[document_id] = now + self._ttl
            return True

    def release(self, document_id: str) -> None:
        with self._lock:
            self._held.pop(document_id, None)

    def is_held(self, document_id: str) -> bool:
        with self._lock:
            expires_at = self._held.get(document_id)
            return expires_at is not None and expires_at > self._clock()


document_leases = DocumentLeases(settings.lease_ttl_seconds)


# ---------------------------------------------------------------------------
# TransitionTasks (rows)
# ---------------------------------------------------------------------------


class TransitionTasks(ListResponseMixin):
    @staticmethod
    def enqueue(db: Session, spec: Any) -> TransitionTask:
        """Insert a pending task; rejected while the document has an unresolved one."""
        document_id = coerce_uuid(spec.document_id)
        existing = db.scalars(
            select(TransitionTask).where(
                TransitionTask.document_id == document_id,
                TransitionTask.status.in_(UNRESOLVED_STATUSES),
            )
        ).first()
        if existing is not None:
            logger.warning(
                "Document %s already has unresolved transition %s",
                document_id,
                existing.id,
                extra={"document_id": document_id, "task_id": existing.id},
            )
            raise InvariantViolation(
                f"Document {document_id} already has an unresolved transition task"
            )
        current_phase = RetentionPhase(spec.current_phase)
        target_phase = RetentionPhase(spec.target_phase)
        if current_phase == target_phase or current_phase == RetentionPhase.final:
            raise InvariantViolation(
                f"Cannot transition from {current_phase.value} to {target_phase.value}"
            )
        task = TransitionTask(
            document_id=document_id,
            current_phase=current_phase,
            target_phase=target_phase,
            retention_category=spec.retention_category,
            scheduled_for=spec.scheduled_for,
            status=TransitionStatus.pending,
        )
        db.add(task)
        db.flush()
        db.refresh(task)
        logger.info(
            "Enqueued transition %s for document %s to %s",
            task.id,
            document_id,
            target_phase.value,
        )
        return task

    @staticmethod
    def get(db: Session, task_id: str) -> TransitionTask:
        task = db.get(TransitionTask, coerce_uuid(task_id))
        if not task:
            raise HTTPException(status_code=404, detail="Transition task not found")
        return task

    @staticmethod
    def list(
        db: Session,
        status: str | None,
        document_id: str | None,
        retention_category: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[TransitionTask]:
        stmt = select(TransitionTask)
        if status is not None:
            try:
                stmt = stmt.where(TransitionTask.status == TransitionStatus(status))
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        if document_id is not None:
            stmt = stmt.where(TransitionTask.document_id == coerce_uuid(document_id))
        if retention_category is not None:
            stmt = stmt.where(TransitionTask.retention_category == retention_category)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "scheduled_for": TransitionTask.scheduled_for,
                "created_at": TransitionTask.created_at,
                "completed_at": TransitionTask.completed_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def retry(db: Session, task_id: str) -> TransitionTask:
        task = TransitionTasks.get(db, task_id)
        if task.status != TransitionStatus.failed:
            raise InvariantViolation(
                f"Only failed tasks can be retried; task {task.id} is {task.status.value}"
            )
        task.status = TransitionStatus.pending
        task.error = None
        task.started_at = None
        task.completed_at = None
        db.flush()
        db.refresh(task)
        logger.info("Transition %s reset to pending", task.id)
        return task

    @staticmethod
    def cancel(db: Session, task_id: str) -> None:
        task = TransitionTasks.get(db, task_id)
        if task.status != TransitionStatus.pending:
            raise InvariantViolation(
                f"Only pending tasks can be cancelled; task {task.id} is {task.status.value}"
            )
        db.delete(task)
        db.flush()
        logger.info("Cancelled transition %s", task_id)


transition_tasks = TransitionTasks()


# ---------------------------------------------------------------------------
# TransitionQueue (runner)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _WorkItem:
    task_id: str
    document_id: str
    current_phase: RetentionPhase
    target_phase: RetentionPhase
    category_code: str
    entry: CatalogEntry | None


@dataclass
class _EffectResult:
    error: str | None = None
    disposition: FinalDisposition | None = None
    disposition_outcome: str | None = None
    sample_selected: bool | None = None


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    status: str
    error: str | None = None


@dataclass
class QueueRunResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def add(self, outcome: TaskOutcome) -> None:
        if outcome.status == "skipped":
            self.skipped += 1
            return
        self.processed += 1
        if outcome.status == TransitionStatus.completed.value:
            self.completed += 1
        else:
            self.failed += 1
            self.errors[outcome.task_id] = outcome.error or ""


class TransitionQueue:
    def __init__(
        self,
        collaborators: Collaborators,
        *,
        clock: Callable[[], datetime] = utc_now,
        timeout_seconds: float | None = None,
        max_workers: int | None = None,
        leases: DocumentLeases | None = None,
        catalog: RetentionCatalog | None = None,
        actor_id: str = SYSTEM_ACTOR,
    ):
        self._collaborators = collaborators
        self._clock = clock
        self._timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.collaborator_timeout_seconds
        )
        self._workers = max(1, max_workers or settings.transition_workers)
        self._leases = leases or document_leases
        self._catalog = catalog
        self._actor_id = actor_id
        self._calls = ThreadPoolExecutor(
            max_workers=self._workers * 2, thread_name_prefix="retention-call"
        )

    def close(self) -> None:
        self._calls.shutdown(wait=False)

    def __enter__(self) -> "TransitionQueue":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- public operations ---------------------------------------------------

    def process_one(self, db: Session, task_id: str) -> TaskOutcome:
        task = TransitionTasks.get(db, task_id)
        if task.status != TransitionStatus.pending:
            raise InvariantViolation(
                f"Only pending tasks can be processed; task {task.id} is {task.status.value}"
            )
        catalog = self._catalog or load_catalog(db)
        work = self._claim(db, task, catalog)
        if work is None:
            return self._skipped(task)
        result = self._execute(work)
        return self._finalize(db, work, result)

    def process_all(self, db: Session) -> QueueRunResult:
        """Run every pending task, oldest ``scheduled_for`` first.

        Claims and bookkeeping happen on the calling thread; only the
        collaborator effects run on the worker pool.
        """
        run = QueueRunResult()
        pending = db.scalars(
            select(TransitionTask)
            .where(TransitionTask.status == TransitionStatus.pending)
            .order_by(
                TransitionTask.scheduled_for,
                TransitionTask.created_at,
                TransitionTask.id,
            )
        ).all()
        if not pending:
            return run
        catalog = self._catalog or load_catalog(db)

        claimed: list[_WorkItem] = []
        for task in pending:
            work = self._claim(db, task, catalog)
            if work is None:
                run.add(self._skipped(task))
            else:
                claimed.append(work)

        with ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="retention-transition"
        ) as pool:
            futures = [(work, pool.submit(self._execute, work)) for work in claimed]
            for work, future in futures:
                run.add(self._finalize(db, work, future.result()))

        logger.info(
            "Processed %d transitions: %d completed, %d failed, %d skipped",
            run.processed,
            run.completed,
            run.failed,
            run.skipped,
        )
        return run

    def recover_interrupted(self, db: Session) -> int:
        """Fail every task left in ``processing`` by a previous run."""
        stuck = db.scalars(
            select(TransitionTask).where(
                TransitionTask.status == TransitionStatus.processing
            )
        ).all()
        now = self._clock()
        for task in stuck:
            task.status = TransitionStatus.failed
            task.error = "interrupted"
            task.updated_at = now
            self._collaborators.audit.record(
                AuditRecord(
                    action=f"transition.{task.target_phase.value}",
                    document_id=str(task.document_id),
                    actor_id=self._actor_id,
                    timestamp=now,
                    outcome="interrupted",
                    detail={"task_id": str(task.id)},
                )
            )
            transition_tasks_total.labels("interrupted").inc()
            logger.warning(
                "Transition %s was interrupted while processing",
                task.id,
                extra={"task_id": task.id, "document_id": task.document_id},
            )
        db.commit()
        return len(stuck)

    # -- internals -----------------------------------------------------------

    def _skipped(self, task: TransitionTask) -> TaskOutcome:
        transition_tasks_total.labels("skipped").inc()
        logger.info(
            "Document %s is leased; transition %s stays pending",
            task.document_id,
            task.id,
            extra={"task_id": task.id, "document_id": task.document_id},
        )
        return TaskOutcome(task_id=str(task.id), status="skipped")

    def _claim(
        self, db: Session, task: TransitionTask, catalog: RetentionCatalog
    ) -> _WorkItem | None:
        document_id = str(task.document_id)
        if not self._leases.acquire(document_id):
            return None
        started = self._clock()
        claimed = db.execute(
            update(TransitionTask)
            .where(
                TransitionTask.id == task.id,
                TransitionTask.status == TransitionStatus.pending,
            )
            .values(
                status=TransitionStatus.processing,
                started_at=started,
                updated_at=started,
                attempts=TransitionTask.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            self._leases.release(document_id)
            return None
        db.commit()
        return _WorkItem(
            task_id=str(task.id),
            document_id=document_id,
            current_phase=task.current_phase,
            target_phase=task.target_phase,
            category_code=task.retention_category,
            entry=catalog.get(task.retention_category),
        )

    def _call(self, operation: str, fn: Callable[..., Any], *args) -> Any:
        started = time.monotonic()
        future = self._calls.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            # Never started calls are dropped; running ones finish on their own.
            future.cancel()
            raise CollaboratorTimeout(operation, future=future)
        except LifecycleError:
            raise
        except Exception as exc:
            raise CollaboratorFailure(f"{operation} failed: {exc}") from exc
        finally:
            collaborator_call_seconds.labels(operation).observe(
                time.monotonic() - started
            )

    def _dispose(self, work: _WorkItem, result: _EffectResult) -> None:
        handler = self._collaborators.disposition
        entry = work.entry
        result.disposition = entry.final_disposition
        if entry.final_disposition == FinalDisposition.destroy:
            self._call("destroy", handler.destroy, work.document_id)
            result.disposition_outcome = "destroyed"
        elif entry.final_disposition == FinalDisposition.archive_permanent:
            self._call("archive_permanently", handler.archive_permanently, work.document_id)
            result.disposition_outcome = "archived_permanently"
        else:
            selected = self._call(
                "select_sample",
                handler.select_sample,
                [work.document_id],
                entry.sample_percentage,
                entry.sample_criteria,
            )
            result.sample_selected = work.document_id in {str(i) for i in selected}
            if result.sample_selected:
                self._call(
                    "archive_permanently", handler.archive_permanently, work.document_id
                )
                result.disposition_outcome = "archived_permanently"
            else:
                self._call("destroy", handler.destroy, work.document_id)
                result.disposition_outcome = "destroyed"

    def _execute(self, work: _WorkItem) -> _EffectResult:
        store = self._collaborators.store
        result = _EffectResult()
        straggler: Future | None = None
        late_phase_update = False
        try:
            if work.entry is None:
                raise EntityNotFound("retention category", work.category_code)
            document = self._call("get", store.get, work.document_id)
            if RetentionPhase(document.phase) != work.current_phase:
                raise InvariantViolation(
                    f"document phase is {RetentionPhase(document.phase).value}, "
                    f"expected {work.current_phase.value}"
                )
            self._call(
                "update_phase",
                store.update,
                work.document_id,
                {"phase": work.target_phase},
            )
            if work.target_phase == RetentionPhase.final:
                try:
                    self._dispose(work, result)
                except CollaboratorFailure:
                    self._restore_phase(work)
                    raise
        except CollaboratorTimeout as exc:
            result.error = "timeout"
            straggler = exc.future
            late_phase_update = exc.operation == "update_phase"
        except LifecycleError as exc:
            result.error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected error applying transition %s", work.task_id)
            result.error = str(exc) or exc.__class__.__name__
        finally:
            if straggler is not None:
                # Runs at once when the call already finished.
                straggler.add_done_callback(
                    partial(self._settle_straggler, work, late_phase_update)
                )
            else:
                self._leases.release(work.document_id)
        return result

    def _settle_straggler(
        self, work: _WorkItem, restore_phase: bool, future: Future
    ) -> None:
        """Release the lease once an abandoned call returns.

        A phase update that lands after its task already failed is undone
        first, so the document keeps the phase the task started from.
        """
        try:
            if restore_phase and not future.cancelled() and future.exception() is None:
                self._collaborators.store.update(
                    work.document_id, {"phase": work.current_phase}
                )
                logger.warning(
                    "Rolled back late phase update of document %s",
                    work.document_id,
                    extra={"task_id": work.task_id, "document_id": work.document_id},
                )
        except Exception:
            logger.exception(
                "Could not roll back late phase update of document %s",
                work.document_id,
            )
        finally:
            self._leases.release(work.document_id)

    def _restore_phase(self, work: _WorkItem) -> None:
        try:
            self._call(
                "restore_phase",
                self._collaborators.store.update,
                work.document_id,
                {"phase": work.current_phase},
            )
        except CollaboratorFailure as exc:
            logger.error(
                "Could not restore phase of document %s after failed disposition: %s",
                work.document_id,
                exc,
                extra={"task_id": work.task_id, "document_id": work.document_id},
            )

    def _finalize(
        self, db: Session, work: _WorkItem, result: _EffectResult
    ) -> TaskOutcome:
        task = db.get(TransitionTask, coerce_uuid(work.task_id))
        finished = self._clock()
        if result.error is None:
            task.status = TransitionStatus.completed
            task.completed_at = finished
            task.error = None
        else:
            task.status = TransitionStatus.failed
            task.error = result.error
        task.updated_at = finished

        audit = self._collaborators.audit
        audit.record(
            AuditRecord(
                action=f"transition.{work.target_phase.value}",
                document_id=work.document_id,
                actor_id=self._actor_id,
                timestamp=finished,
                outcome=task.status.value,
                detail={
                    "task_id": work.task_id,
                    "from": work.current_phase.value,
                    "to": work.target_phase.value,
                    "error": result.error,
                },
            )
        )
        if result.disposition is not None:
            audit.record(
                AuditRecord(
                    action=f"disposition.{result.disposition.value}",
                    document_id=work.document_id,
                    actor_id=self._actor_id,
                    timestamp=finished,
                    outcome=task.status.value,
                    detail={
                        "task_id": work.task_id,
                        "outcome": result.disposition_outcome,
                        "sample_selected": result.sample_selected,
                        "error": result.error,
                    },
                )
            )
        db.commit()

        transition_tasks_total.labels(task.status.value).inc()
        if result.error is None:
            logger.info(
                "Transition %s completed",
                work.task_id,
                extra={"task_id": work.task_id, "document_id": work.document_id},
            )
        else:
            logger.warning(
                "Transition %s failed: %s",
                work.task_id,
                result.error,
                extra={"task_id": work.task_id, "document_id": work.document_id},
            )
        return TaskOutcome(
            task_id=work.task_id, status=task.status.value, error=task.error
        )
