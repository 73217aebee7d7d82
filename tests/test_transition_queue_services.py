import threading
import time
from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.errors import CollaboratorFailure, InvariantViolation
from app.models.ecm import RetentionPhase, TransitionStatus
from app.services.common import utc_now
from app.services.transition_queue import (
    DocumentLeases,
    TransitionQueue,
    TransitionTasks,
)
from app.services.transition_scheduler import TransitionSpec

from mocks import (
    T0,
    FakeDispositionHandler,
    FrozenClock,
    InMemoryDocumentStore,
    make_collaborators,
    make_document,
)


def _enqueue(db_session, document, target=RetentionPhase.semi_active, **overrides):
    current = (
        RetentionPhase.active
        if target == RetentionPhase.semi_active
        else RetentionPhase.semi_active
    )
    values = {
        "document_id": document.id,
        "current_phase": current,
        "target_phase": target,
        "retention_category": document.retention_category,
        "scheduled_for": T0,
    }
    values.update(overrides)
    task = TransitionTasks.enqueue(db_session, TransitionSpec(**values))
    db_session.commit()
    return task


def _queue(collaborators, catalog, **kwargs):
    kwargs.setdefault("clock", FrozenClock(T0 + timedelta(hours=1)))
    kwargs.setdefault("timeout_seconds", 2)
    kwargs.setdefault("max_workers", 2)
    kwargs.setdefault("leases", DocumentLeases(60))
    return TransitionQueue(collaborators, catalog=catalog, **kwargs)


def _setup(*documents, disposition=None):
    store = InMemoryDocumentStore(documents)
    return make_collaborators(store=store, disposition=disposition)


class TestTransitionTasks:
    def test_enqueue(self, db_session):
        document = make_document()
        task = _enqueue(db_session, document)
        assert task.status == TransitionStatus.pending
        assert task.attempts == 0
        assert task.scheduled_for == T0

    def test_duplicate_unresolved_task_rejected(self, db_session):
        document = make_document()
        _enqueue(db_session, document)
        with pytest.raises(InvariantViolation):
            _enqueue(db_session, document)

    def test_invalid_phase_pair_rejected(self, db_session):
        with pytest.raises(InvariantViolation):
            _enqueue(
                db_session,
                make_document(),
                target=RetentionPhase.final,
                current_phase=RetentionPhase.final,
            )

    def test_get_not_found(self, db_session):
        with pytest.raises(HTTPException) as exc:
            TransitionTasks.get(db_session, "00000000-0000-0000-0000-000000000000")
        assert exc.value.status_code == 404

    def test_list_by_status(self, db_session):
        _enqueue(db_session, make_document())
        assert len(
            TransitionTasks.list(
                db_session, "pending", None, None, "scheduled_for", "asc", 50, 0
            )
        ) == 1
        assert TransitionTasks.list(
            db_session, "failed", None, None, "scheduled_for", "asc", 50, 0
        ) == []

    def test_list_invalid_status(self, db_session):
        with pytest.raises(HTTPException) as exc:
            TransitionTasks.list(
                db_session, "stuck", None, None, "scheduled_for", "asc", 50, 0
            )
        assert exc.value.status_code == 400

    def test_cancel_pending(self, db_session):
        task = _enqueue(db_session, make_document())
        task_id = str(task.id)
        TransitionTasks.cancel(db_session, task_id)
        with pytest.raises(HTTPException):
            TransitionTasks.get(db_session, task_id)

    def test_cancel_requires_pending(self, db_session):
        task = _enqueue(db_session, make_document())
        task.status = TransitionStatus.failed
        db_session.flush()
        with pytest.raises(InvariantViolation):
            TransitionTasks.cancel(db_session, str(task.id))

    def test_retry_requires_failed(self, db_session):
        task = _enqueue(db_session, make_document())
        with pytest.raises(InvariantViolation):
            TransitionTasks.retry(db_session, str(task.id))


class TestProcessOne:
    def test_moves_document_to_semi_active(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        task = _enqueue(db_session, document)
        before = utc_now()

        with _queue(collaborators, catalog, clock=utc_now) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "completed"
        db_session.refresh(task)
        assert task.status == TransitionStatus.completed
        assert task.completed_at >= before - timedelta(milliseconds=1)
        assert task.started_at <= task.completed_at
        assert task.attempts == 1
        assert task.error is None
        assert collaborators.store.get(document.id).phase == RetentionPhase.semi_active
        assert collaborators.audit.actions() == ["transition.semi_active"]
        assert collaborators.disposition.calls == []

    def test_only_pending_tasks(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        task = _enqueue(db_session, document)
        with _queue(collaborators, catalog) as queue:
            queue.process_one(db_session, str(task.id))
            with pytest.raises(InvariantViolation):
                queue.process_one(db_session, str(task.id))

    def test_final_destroy(self, db_session, catalog):
        document = make_document(phase=RetentionPhase.semi_active)
        collaborators = _setup(document)
        task = _enqueue(db_session, document, target=RetentionPhase.final)

        with _queue(collaborators, catalog) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "completed"
        assert collaborators.disposition.calls == [("destroy", document.id)]
        assert collaborators.store.get(document.id).phase == RetentionPhase.final
        assert collaborators.audit.actions() == [
            "transition.final",
            "disposition.destroy",
        ]
        assert collaborators.audit.events[1].detail["outcome"] == "destroyed"

    def test_final_archive_permanent(self, db_session, catalog):
        document = make_document(
            phase=RetentionPhase.semi_active, retention_category="SOC-01"
        )
        collaborators = _setup(document)
        task = _enqueue(db_session, document, target=RetentionPhase.final)

        with _queue(collaborators, catalog) as queue:
            queue.process_one(db_session, str(task.id))

        assert collaborators.disposition.calls == [
            ("archive_permanently", document.id)
        ]
        assert collaborators.audit.actions()[-1] == "disposition.archive_permanent"

    def test_sample_selected_is_archived(self, db_session, catalog):
        document = make_document(
            phase=RetentionPhase.semi_active, retention_category="PRJ-01"
        )
        collaborators = _setup(
            document, disposition=FakeDispositionHandler(selected=[document.id])
        )
        task = _enqueue(db_session, document, target=RetentionPhase.final)

        with _queue(collaborators, catalog) as queue:
            queue.process_one(db_session, str(task.id))

        assert collaborators.disposition.calls == [
            ("select_sample", (document.id,)),
            ("archive_permanently", document.id),
        ]
        detail = collaborators.audit.events[-1].detail
        assert detail["sample_selected"] is True
        assert detail["outcome"] == "archived_permanently"

    def test_sample_not_selected_is_destroyed(self, db_session, catalog):
        document = make_document(
            phase=RetentionPhase.semi_active, retention_category="PRJ-01"
        )
        collaborators = _setup(document)
        task = _enqueue(db_session, document, target=RetentionPhase.final)

        with _queue(collaborators, catalog) as queue:
            queue.process_one(db_session, str(task.id))

        assert collaborators.disposition.calls[-1] == ("destroy", document.id)
        assert collaborators.audit.events[-1].detail["sample_selected"] is False

    def test_failed_disposition_restores_phase(self, db_session, catalog):
        document = make_document(phase=RetentionPhase.semi_active)
        collaborators = _setup(
            document, disposition=FakeDispositionHandler(fail_on=["destroy"])
        )
        task = _enqueue(db_session, document, target=RetentionPhase.final)

        with _queue(collaborators, catalog) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "failed"
        assert "destroy failed" in outcome.error
        db_session.refresh(task)
        assert task.status == TransitionStatus.failed
        assert task.completed_at is None
        assert collaborators.store.get(document.id).phase == RetentionPhase.semi_active
        assert [e.outcome for e in collaborators.audit.events] == ["failed", "failed"]

    def test_phase_mismatch_fails_without_update(self, db_session, catalog):
        document = make_document(phase=RetentionPhase.semi_active)
        collaborators = _setup(document)
        task = _enqueue(db_session, document)

        with _queue(collaborators, catalog) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "failed"
        assert "expected active" in outcome.error
        assert collaborators.store.updates == []

    def test_missing_document(self, db_session, catalog):
        document = make_document()
        collaborators = _setup()
        task = _enqueue(db_session, document)

        with _queue(collaborators, catalog) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "failed"
        assert outcome.error == f"document not found: {document.id}"

    def test_unknown_category(self, db_session, catalog):
        document = make_document(retention_category="ZZZ")
        collaborators = _setup(document)
        task = _enqueue(db_session, document)

        with _queue(collaborators, catalog) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "failed"
        assert "ZZZ" in outcome.error
        assert collaborators.store.updates == []

    def test_leased_document_is_skipped(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        task = _enqueue(db_session, document)
        leases = DocumentLeases(60)
        leases.acquire(document.id)

        with _queue(collaborators, catalog, leases=leases) as queue:
            outcome = queue.process_one(db_session, str(task.id))

        assert outcome.status == "skipped"
        db_session.refresh(task)
        assert task.status == TransitionStatus.pending
        assert task.attempts == 0
        assert collaborators.store.updates == []

    def test_expired_lease_can_be_taken(self):
        ticks = iter([0.0, 100.0, 100.0])
        leases = DocumentLeases(10, clock=lambda: next(ticks))
        assert leases.acquire("doc") is True
        assert leases.acquire("doc") is True

    def test_lease_released_after_processing(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        task = _enqueue(db_session, document)
        leases = DocumentLeases(60)

        with _queue(collaborators, catalog, leases=leases) as queue:
            queue.process_one(db_session, str(task.id))

        assert leases.is_held(document.id) is False

    def test_timeout_fails_task_and_holds_lease_until_call_returns(
        self, db_session, catalog
    ):
        document = make_document(phase=RetentionPhase.semi_active)
        release = threading.Event()
        collaborators = _setup(
            document, disposition=FakeDispositionHandler(block=release)
        )
        task = _enqueue(db_session, document, target=RetentionPhase.final)
        leases = DocumentLeases(60)

        with _queue(
            collaborators, catalog, leases=leases, timeout_seconds=0.1
        ) as queue:
            outcome = queue.process_one(db_session, str(task.id))
            assert outcome.status == "failed"
            assert outcome.error == "timeout"
            assert leases.is_held(document.id) is True
            assert (
                collaborators.store.get(document.id).phase
                == RetentionPhase.semi_active
            )

            release.set()
            deadline = time.monotonic() + 5
            while leases.is_held(document.id) and time.monotonic() < deadline:
                time.sleep(0.01)

        assert leases.is_held(document.id) is False
        db_session.refresh(task)
        assert task.error == "timeout"

    def test_late_phase_update_is_rolled_back(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        release = threading.Event()
        collaborators.store.block = release
        task = _enqueue(db_session, document)
        leases = DocumentLeases(60)

        with _queue(
            collaborators, catalog, leases=leases, timeout_seconds=0.1
        ) as queue:
            outcome = queue.process_one(db_session, str(task.id))
            assert outcome.status == "failed"
            assert outcome.error == "timeout"
            assert leases.is_held(document.id) is True

            release.set()
            deadline = time.monotonic() + 5
            while leases.is_held(document.id) and time.monotonic() < deadline:
                time.sleep(0.01)

        assert leases.is_held(document.id) is False
        assert collaborators.store.get(document.id).phase == RetentionPhase.active
        assert [patch["phase"] for _, patch in collaborators.store.updates] == [
            RetentionPhase.semi_active,
            RetentionPhase.active,
        ]

        collaborators.store.block = None
        TransitionTasks.retry(db_session, str(task.id))
        db_session.commit()
        with _queue(collaborators, catalog, leases=leases) as queue:
            outcome = queue.process_one(db_session, str(task.id))
        assert outcome.status == "completed"
        assert collaborators.store.get(document.id).phase == RetentionPhase.semi_active


class TestRetryAndRecovery:
    def test_retry_failed_task_then_complete(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        collaborators.store.failures[document.id] = CollaboratorFailure("store offline")
        task = _enqueue(db_session, document)

        with _queue(collaborators, catalog) as queue:
            first = queue.process_one(db_session, str(task.id))
            assert first.status == "failed"
            assert first.error == "store offline"

            retried = TransitionTasks.retry(db_session, str(task.id))
            assert retried.status == TransitionStatus.pending
            assert retried.error is None
            db_session.commit()

            del collaborators.store.failures[document.id]
            second = queue.process_one(db_session, str(task.id))

        assert second.status == "completed"
        db_session.refresh(task)
        assert task.attempts == 2
        assert collaborators.store.get(document.id).phase == RetentionPhase.semi_active

    def test_recover_interrupted(self, db_session, catalog):
        document = make_document()
        collaborators = _setup(document)
        task = _enqueue(db_session, document)
        task.status = TransitionStatus.processing
        db_session.commit()

        with _queue(collaborators, catalog) as queue:
            assert queue.recover_interrupted(db_session) == 1
            assert queue.recover_interrupted(db_session) == 0

        db_session.refresh(task)
        assert task.status == TransitionStatus.failed
        assert task.error == "interrupted"
        assert collaborators.audit.events[0].outcome == "interrupted"
        assert collaborators.store.updates == []
        TransitionTasks.retry(db_session, str(task.id))


class TestProcessAll:
    def test_failures_are_isolated(self, db_session, catalog):
        documents = [make_document() for _ in range(3)]
        collaborators = _setup(*documents)
        collaborators.store.failures[documents[1].id] = CollaboratorFailure("boom")
        tasks = [
            _enqueue(db_session, d, scheduled_for=T0 + timedelta(minutes=i))
            for i, d in enumerate(documents)
        ]
        task_ids = [str(t.id) for t in tasks]

        with _queue(collaborators, catalog) as queue:
            result = queue.process_all(db_session)

        assert result.processed == 3
        assert result.completed == 2
        assert result.failed == 1
        assert result.errors == {task_ids[1]: "boom"}
        statuses = [TransitionTasks.get(db_session, i).status for i in task_ids]
        assert statuses == [
            TransitionStatus.completed,
            TransitionStatus.failed,
            TransitionStatus.completed,
        ]

    def test_leased_documents_stay_pending(self, db_session, catalog):
        free, busy = make_document(), make_document()
        collaborators = _setup(free, busy)
        _enqueue(db_session, free)
        busy_task = _enqueue(db_session, busy)
        leases = DocumentLeases(60)
        leases.acquire(busy.id)

        with _queue(collaborators, catalog, leases=leases) as queue:
            result = queue.process_all(db_session)

        assert (result.completed, result.skipped) == (1, 1)
        db_session.refresh(busy_task)
        assert busy_task.status == TransitionStatus.pending

    def test_nothing_pending(self, db_session, catalog):
        with _queue(make_collaborators(), catalog) as queue:
            result = queue.process_all(db_session)
        assert result.processed == 0
