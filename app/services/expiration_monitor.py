import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.errors import CollaboratorFailure, ValidationError
from app.models.ecm import FinalDisposition, NotificationChannel, RetentionPhase
from app.services.collaborators import (
    SYSTEM_ACTOR,
    AuditRecord,
    AuditSink,
    DocumentRecord,
    DocumentStore,
    NotificationSink,
)
from app.services.common import add_years, ensure_utc
from app.services.retention_catalog import CatalogEntry, RetentionCatalog

logger = logging.getLogger(__name__)

URGENT_DAYS = 7
UPCOMING_DAYS = 30
MAX_EXTENSION_YEARS = 99

_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class ExpiringDocumentView:
    document_id: str
    title: str
    filename: str
    retention_category: str
    category_name: str
    final_disposition: FinalDisposition
    phase: RetentionPhase
    uploaded_at: datetime
    expiration_date: datetime
    days_until_expiration: int


@dataclass
class ExpirationBuckets:
    overdue: list[ExpiringDocumentView] = field(default_factory=list)
    urgent: list[ExpiringDocumentView] = field(default_factory=list)
    upcoming: list[ExpiringDocumentView] = field(default_factory=list)
    future: list[ExpiringDocumentView] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "overdue": len(self.overdue),
            "urgent": len(self.urgent),
            "upcoming": len(self.upcoming),
            "future": len(self.future),
            "total": len(self.overdue)
            + len(self.urgent)
            + len(self.upcoming)
            + len(self.future),
        }

    def attention(self) -> list[ExpiringDocumentView]:
        return self.overdue + self.urgent


def expiration_date(document: DocumentRecord, entry: CatalogEntry) -> datetime | None:
    start = document.uploaded_at or document.created_at
    if start is None:
        return None
    years = entry.total_years + (document.retention_extended_years or 0)
    return add_years(ensure_utc(start), years)


def days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days left, rounded up; negative once the date has passed."""
    return math.ceil((ensure_utc(expires_at) - ensure_utc(now)) / _ONE_DAY)


def bucket_for(days: int) -> str:
    if days < 0:
        return "overdue"
    if days <= URGENT_DAYS:
        return "urgent"
    if days <= UPCOMING_DAYS:
        return "upcoming"
    return "future"


def project(
    document: DocumentRecord, catalog: RetentionCatalog, now: datetime
) -> ExpiringDocumentView | None:
    entry = catalog.get(document.retention_category)
    if entry is None:
        return None
    expires_at = expiration_date(document, entry)
    if expires_at is None:
        return None
    return ExpiringDocumentView(
        document_id=document.id,
        title=document.title,
        filename=document.filename,
        retention_category=entry.code,
        category_name=entry.name,
        final_disposition=entry.final_disposition,
        phase=RetentionPhase(document.phase),
        uploaded_at=ensure_utc(document.uploaded_at or document.created_at),
        expiration_date=expires_at,
        days_until_expiration=days_until(expires_at, now),
    )


def bucket(
    documents: Iterable[DocumentRecord],
    catalog: RetentionCatalog,
    now: datetime,
    disposition: FinalDisposition | str | None = None,
) -> ExpirationBuckets:
    """Partition documents by how soon their retention runs out.

    Documents without a known category or start date are left out. Every
    other document lands in exactly one bucket.
    """
    wanted = FinalDisposition(disposition) if disposition is not None else None
    buckets = ExpirationBuckets()
    for document in documents:
        view = project(document, catalog, now)
        if view is None:
            continue
        if wanted is not None and view.final_disposition != wanted:
            continue
        getattr(buckets, bucket_for(view.days_until_expiration)).append(view)
    for views in (buckets.overdue, buckets.urgent, buckets.upcoming, buckets.future):
        views.sort(key=lambda v: (v.expiration_date, v.document_id))
    return buckets


def extend_retention(
    store: DocumentStore,
    audit: AuditSink,
    document_id: str,
    additional_years: int,
    now: datetime,
    actor_id: str = SYSTEM_ACTOR,
) -> DocumentRecord:
    if not 1 <= additional_years <= MAX_EXTENSION_YEARS:
        raise ValidationError(
            f"additional_years must be between 1 and {MAX_EXTENSION_YEARS}",
            field="additional_years",
        )
    document = store.get(document_id)
    patch = {
        "retention_extended_years": (document.retention_extended_years or 0)
        + additional_years,
        "expiry_notified_at": None,
    }
    store.update(document.id, patch)
    audit.record(
        AuditRecord(
            action="retention.extended",
            document_id=document.id,
            actor_id=actor_id,
            timestamp=now,
            outcome="applied",
            detail={
                "additional_years": additional_years,
                "retention_extended_years": patch["retention_extended_years"],
            },
        )
    )
    logger.info(
        "Extended retention of document %s by %d years",
        document.id,
        additional_years,
        extra={"document_id": document.id},
    )
    return document.with_patch(patch)


def notify_expiring(
    store: DocumentStore,
    sink: NotificationSink,
    catalog: RetentionCatalog,
    now: datetime,
    recipient_ids: list[str],
) -> int:
    """Alert once per overdue or urgent document; returns documents alerted."""
    if not recipient_ids:
        logger.info("No retention officers configured; skipping expiry alerts")
        return 0
    documents = store.query(
        {"phases": [RetentionPhase.active, RetentionPhase.semi_active]}
    )
    pending = [d for d in documents if d.expiry_notified_at is None]
    notified = 0
    for view in bucket(pending, catalog, now).attention():
        payload = {
            "title": f"Retention expiring: {view.title or view.filename}",
            "body": _expiry_message(view),
            "document_id": view.document_id,
            "retention_category": view.retention_category,
            "expiration_date": view.expiration_date.isoformat(),
            "days_until_expiration": view.days_until_expiration,
        }
        try:
            for channel in (NotificationChannel.email, NotificationChannel.in_app):
                sink.send(channel, recipient_ids, payload)
            store.update(view.document_id, {"expiry_notified_at": now})
        except CollaboratorFailure as exc:
            logger.warning(
                "Could not send expiry alert for document %s: %s",
                view.document_id,
                exc,
                extra={"document_id": view.document_id},
            )
            continue
        notified += 1
    if notified:
        logger.info("Sent expiry alerts for %d documents", notified)
    return notified


def _expiry_message(view: ExpiringDocumentView) -> str:
    days = view.days_until_expiration
    if days < 0:
        when = f"expired {abs(days)} days ago"
    elif days == 0:
        when = "expires today"
    else:
        when = f"expires in {days} days"
    return (
        f"{view.filename} ({view.retention_category}) {when}; "
        f"final disposition: {view.final_disposition.value}."
    )
