import threading
import uuid
from datetime import datetime, timedelta, timezone

from app.errors import CollaboratorFailure, EntityNotFound
from app.models.ecm import RetentionPhase
from app.services.collaborators import (
    Collaborators,
    DispositionResult,
    DocumentRecord,
)

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, moment: datetime = T0):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> datetime:
        self.moment = self.moment + timedelta(**kwargs)
        return self.moment


def make_document(**overrides) -> DocumentRecord:
    values = {
        "id": str(uuid.uuid4()),
        "filename": "document.pdf",
        "title": "Document",
        "uploaded_at": T0,
        "created_at": T0,
        "retention_category": "FIS-01",
    }
    values.update(overrides)
    if "tags" in values:
        values["tags"] = tuple(values["tags"])
    return DocumentRecord(**values)


class InMemoryDocumentStore:
    def __init__(self, documents=()):
        self._lock = threading.Lock()
        self.documents = {}
        self.updates = []
        # document_id -> exception raised by update()
        self.failures = {}
        # update() waits on this event when set
        self.block = None
        for document in documents:
            self.add(document)

    def add(self, document: DocumentRecord) -> DocumentRecord:
        with self._lock:
            self.documents[document.id] = document
        return document

    def get(self, document_id: str) -> DocumentRecord:
        with self._lock:
            document = self.documents.get(str(document_id))
        if document is None:
            raise EntityNotFound("document", document_id)
        return document

    def update(self, document_id: str, patch: dict) -> None:
        document_id = str(document_id)
        failure = self.failures.get(document_id)
        if failure is not None:
            raise failure
        if self.block is not None:
            self.block.wait(timeout=5)
        with self._lock:
            document = self.documents.get(document_id)
            if document is None:
                raise EntityNotFound("document", document_id)
            self.updates.append((document_id, dict(patch)))
            self.documents[document_id] = document.with_patch(patch)

    def query(self, filters: dict) -> list[DocumentRecord]:
        with self._lock:
            documents = list(self.documents.values())
        if filters.get("ids") is not None:
            wanted = {str(i) for i in filters["ids"]}
            documents = [d for d in documents if d.id in wanted]
        if filters.get("phases") is not None:
            phases = {RetentionPhase(p) for p in filters["phases"]}
            documents = [d for d in documents if d.phase in phases]
        for key in ("folder", "document_type", "status", "retention_category"):
            if filters.get(key) is not None:
                documents = [d for d in documents if getattr(d, key) == filters[key]]
        if filters.get("tags"):
            documents = [
                d for d in documents if all(t in d.tags for t in filters["tags"])
            ]
        return sorted(documents, key=lambda d: (d.created_at or d.uploaded_at, d.id))


class FakeDispositionHandler:
    def __init__(self, *, fail_on=(), selected=(), block: threading.Event | None = None):
        self.calls = []
        self.fail_on = set(fail_on)
        self.selected = set(selected)
        self.block = block

    def _run(self, operation: str, document_id: str, outcome: str) -> DispositionResult:
        self.calls.append((operation, str(document_id)))
        if self.block is not None:
            self.block.wait(timeout=5)
        if operation in self.fail_on:
            raise RuntimeError("disposal backend unavailable")
        return DispositionResult(document_id=str(document_id), outcome=outcome)

    def destroy(self, document_id: str) -> DispositionResult:
        return self._run("destroy", document_id, "destroyed")

    def archive_permanently(self, document_id: str) -> DispositionResult:
        return self._run("archive_permanently", document_id, "archived_permanently")

    def select_sample(self, document_ids, percentage, criteria):
        self.calls.append(("select_sample", tuple(document_ids)))
        return [i for i in document_ids if i in self.selected]


class RecordingNotificationSink:
    def __init__(self):
        self.sent = []

    def send(self, channel, recipient_ids, payload) -> int:
        recipients = list(dict.fromkeys(recipient_ids))
        self.sent.append((channel, recipients, dict(payload)))
        return len(recipients)


class FailingNotificationSink(RecordingNotificationSink):
    """Fails every send, or only sends addressed to ``fail_for``."""

    def __init__(self, fail_for=None):
        super().__init__()
        self.fail_for = set(fail_for) if fail_for is not None else None

    def send(self, channel, recipient_ids, payload) -> int:
        if self.fail_for is None or self.fail_for & set(recipient_ids):
            raise CollaboratorFailure("notification relay down")
        return super().send(channel, recipient_ids, payload)


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


def make_collaborators(
    store=None, disposition=None, notifications=None, audit=None
) -> Collaborators:
    return Collaborators(
        store=store if store is not None else InMemoryDocumentStore(),
        disposition=disposition if disposition is not None else FakeDispositionHandler(),
        notifications=(
            notifications if notifications is not None else RecordingNotificationSink()
        ),
        audit=audit if audit is not None else RecordingAuditSink(),
    )
