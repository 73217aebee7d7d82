"""Contracts for the external systems the retention engine drives.

The engine never touches file bytes or delivery mechanics. It reads and
patches documents through a ``DocumentStore``, hands terminal actions to a
``DispositionHandler``, alerts people through a ``NotificationSink`` and
writes one event per rule match, transition and disposition to an
``AuditSink``. The ``Sql*`` adapters are the defaults wired by the API and
the Celery tasks; tests substitute in-memory fakes.
"""

import hashlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import CollaboratorFailure, EntityNotFound
from app.models.ecm import (
    AuditEvent,
    Document,
    Notification,
    NotificationChannel,
    RetentionPhase,
)
from app.services.common import coerce_uuid, utc_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:retention"

PATCHABLE_FIELDS = frozenset(
    {
        "phase",
        "tags",
        "document_type",
        "folder",
        "retention_category",
        "status",
        "is_locked",
        "retention_extended_years",
        "expiry_notified_at",
    }
)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentRecord:
    """Immutable snapshot of the document attributes rules and schedules read."""

    id: str
    filename: str
    title: str = ""
    extension: str | None = None
    size_bytes: int | None = None
    content_text: str | None = None
    created_at: datetime | None = None
    uploaded_at: datetime | None = None
    folder: str | None = None
    document_type: str | None = None
    status: str = "draft"
    phase: RetentionPhase = RetentionPhase.active
    tags: tuple[str, ...] = ()
    retention_category: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_locked: bool = False
    retention_extended_years: int = 0
    expiry_notified_at: datetime | None = None

    def with_patch(self, patch: dict[str, Any]) -> "DocumentRecord":
        values = dict(patch)
        if "phase" in values:
            values["phase"] = RetentionPhase(values["phase"])
        if "tags" in values:
            values["tags"] = tuple(values["tags"])
        return replace(self, **values)


@dataclass(frozen=True)
class DispositionResult:
    document_id: str
    outcome: str
    detail: str | None = None


@dataclass(frozen=True)
class AuditRecord:
    action: str
    document_id: str | None
    actor_id: str
    timestamp: datetime
    outcome: str
    detail: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class DocumentStore(Protocol):
    def get(self, document_id: str) -> DocumentRecord: ...

    def update(self, document_id: str, patch: dict[str, Any]) -> None: ...

    def query(self, filters: dict[str, Any]) -> list[DocumentRecord]: ...


class DispositionHandler(Protocol):
    def destroy(self, document_id: str) -> DispositionResult: ...

    def archive_permanently(self, document_id: str) -> DispositionResult: ...

    def select_sample(
        self, document_ids: list[str], percentage: int, criteria: str | None
    ) -> list[str]: ...


class NotificationSink(Protocol):
    def send(
        self,
        channel: NotificationChannel,
        recipient_ids: list[str],
        payload: dict[str, Any],
    ) -> int: ...


class AuditSink(Protocol):
    def record(self, event: AuditRecord) -> None: ...


@dataclass
class Collaborators:
    store: DocumentStore
    disposition: DispositionHandler
    notifications: NotificationSink
    audit: AuditSink


# ---------------------------------------------------------------------------
# SQL-backed default adapters
# ---------------------------------------------------------------------------


def document_to_record(document: Document) -> DocumentRecord:
    return DocumentRecord(
        id=str(document.id),
        filename=document.filename,
        title=document.title,
        extension=document.extension,
        size_bytes=document.size_bytes,
        content_text=document.content_text,
        created_at=document.created_at,
        uploaded_at=document.uploaded_at,
        folder=document.folder,
        document_type=document.document_type,
        status=document.status,
        phase=document.phase,
        tags=tuple(document.tags or ()),
        retention_category=document.retention_category,
        metadata=dict(document.metadata_ or {}),
        is_locked=bool(document.is_locked),
        retention_extended_years=document.retention_extended_years or 0,
        expiry_notified_at=document.expiry_notified_at,
    )


class SqlDocumentStore:
    """Reads and patches ``documents`` rows.

    Every call runs in its own session so the store can be used from the
    transition worker threads.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, document_id: str) -> DocumentRecord:
        db = self._session_factory()
        try:
            document = db.get(Document, coerce_uuid(document_id))
            if document is None:
                raise EntityNotFound("document", document_id)
            return document_to_record(document)
        finally:
            db.close()

    def update(self, document_id: str, patch: dict[str, Any]) -> None:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise CollaboratorFailure(
                f"Unsupported document fields: {', '.join(sorted(unknown))}"
            )
        db = self._session_factory()
        try:
            document = db.get(Document, coerce_uuid(document_id))
            if document is None:
                raise EntityNotFound("document", document_id)
            for key, value in patch.items():
                if key == "phase":
                    value = RetentionPhase(value)
                elif key == "tags":
                    value = list(value)
                setattr(document, key, value)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def query(self, filters: dict[str, Any]) -> list[DocumentRecord]:
        stmt = select(Document)
        if filters.get("ids") is not None:
            stmt = stmt.where(
                Document.id.in_([coerce_uuid(i) for i in filters["ids"]])
            )
        if filters.get("phases") is not None:
            stmt = stmt.where(
                Document.phase.in_([RetentionPhase(p) for p in filters["phases"]])
            )
        for key in ("folder", "document_type", "status", "retention_category"):
            if filters.get(key) is not None:
                stmt = stmt.where(getattr(Document, key) == filters[key])
        db = self._session_factory()
        try:
            records = [
                document_to_record(doc)
                for doc in db.scalars(stmt.order_by(Document.created_at, Document.id))
            ]
        finally:
            db.close()
        required_tags = filters.get("tags")
        if required_tags:
            records = [
                r for r in records if all(tag in r.tags for tag in required_tags)
            ]
        return records


class SqlDispositionHandler:
    """Marks documents destroyed or permanently archived.

    File bytes live in the storage service; this adapter only records the
    outcome on the document row so it stops surfacing in dashboards.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _mark(self, document_id: str, status: str, outcome: str) -> DispositionResult:
        db = self._session_factory()
        try:
            document = db.get(Document, coerce_uuid(document_id))
            if document is None:
                raise EntityNotFound("document", document_id)
            document.status = status
            document.disposition_outcome = outcome
            document.disposed_at = utc_now()
            if outcome == "destroyed":
                document.content_text = None
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("Disposition %s applied to document %s", outcome, document_id)
        return DispositionResult(document_id=str(document_id), outcome=outcome)

    def destroy(self, document_id: str) -> DispositionResult:
        return self._mark(document_id, "destroyed", "destroyed")

    def archive_permanently(self, document_id: str) -> DispositionResult:
        return self._mark(document_id, "archived", "archived_permanently")

    def select_sample(
        self, document_ids: list[str], percentage: int, criteria: str | None
    ) -> list[str]:
        """Keep each document with probability ``percentage`` / 100.

        The decision is a hash of the criteria and the id, so it is stable and
        independent of the other ids passed in. The queue calls this with one
        document at a time; ``percentage`` is then a per-document chance, not
        an exact share of a cohort.
        """
        salt = (criteria or "").strip().lower()
        selected = []
        for document_id in document_ids:
            digest = hashlib.sha256(f"{salt}:{document_id}".encode()).hexdigest()
            if int(digest, 16) % 100 < percentage:
                selected.append(document_id)
        return selected


class SqlNotificationSink:
    """In-app notifications become rows; email is queued on Celery."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        email_task: Callable[..., Any] | None = None,
    ):
        self._session_factory = session_factory
        self._email_task = email_task

    def _queue_email(self, recipient_id: str, title: str, body: str) -> None:
        if self._email_task is not None:
            self._email_task(recipient_id, title, body)
            return
        from app.tasks.notifications import send_notification_email

        send_notification_email.delay(recipient_id, title, body)

    def send(
        self,
        channel: NotificationChannel,
        recipient_ids: list[str],
        payload: dict[str, Any],
    ) -> int:
        channel = NotificationChannel(channel)
        title = str(payload.get("title", ""))
        body = str(payload.get("body", ""))
        recipients = _unique(recipient_ids)
        if channel == NotificationChannel.email:
            for recipient_id in recipients:
                self._queue_email(recipient_id, title, body)
            return len(recipients)

        db = self._session_factory()
        try:
            for recipient_id in recipients:
                db.add(
                    Notification(
                        recipient_id=recipient_id,
                        channel=channel,
                        title=title,
                        body=body,
                        payload=payload,
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return len(recipients)


class SqlAuditSink:
    """Adds audit rows to the caller's session; the caller commits."""

    def __init__(self, db: Session):
        self._db = db

    def record(self, event: AuditRecord) -> None:
        self._db.add(
            AuditEvent(
                action=event.action,
                document_id=event.document_id,
                actor_id=event.actor_id,
                outcome=event.outcome,
                detail=event.detail,
                occurred_at=event.timestamp,
            )
        )


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(str(value), None)
    return list(seen)


def build_collaborators(db: Session, session_factory=None) -> Collaborators:
    if session_factory is None:
        from app.db import SessionLocal

        session_factory = SessionLocal
    return Collaborators(
        store=SqlDocumentStore(session_factory),
        disposition=SqlDispositionHandler(session_factory),
        notifications=SqlNotificationSink(session_factory),
        audit=SqlAuditSink(db),
    )
