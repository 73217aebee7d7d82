from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_collaborators, get_db
from app.models.ecm import RetentionPhase
from app.schemas.ecm_expirations import (
    ExpirationBucketsRead,
    ExpiringDocumentRead,
    ExtendRetentionRequest,
    ExtendRetentionResult,
)
from app.services import expiration_monitor as monitor_service
from app.services.collaborators import SYSTEM_ACTOR, Collaborators
from app.services.common import utc_now
from app.services.retention_catalog import load_catalog

router = APIRouter(prefix="/ecm", tags=["ecm-expirations"])


@router.get("/expirations", response_model=ExpirationBucketsRead)
def list_expirations(
    now: datetime | None = None,
    disposition: str | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> ExpirationBucketsRead:
    now = now or utc_now()
    documents = collaborators.store.query(
        {"phases": [RetentionPhase.active, RetentionPhase.semi_active]}
    )
    buckets = monitor_service.bucket(
        documents, load_catalog(db), now, disposition=disposition
    )

    def _views(views):
        return [ExpiringDocumentRead.model_validate(v) for v in views]

    return ExpirationBucketsRead(
        now=now,
        summary=buckets.summary(),
        overdue=_views(buckets.overdue),
        urgent=_views(buckets.urgent),
        upcoming=_views(buckets.upcoming),
        future=_views(buckets.future),
    )


@router.post(
    "/documents/{document_id}/extend-retention",
    response_model=ExtendRetentionResult,
)
def extend_document_retention(
    document_id: str,
    payload: ExtendRetentionRequest,
    collaborators: Collaborators = Depends(get_collaborators),
) -> ExtendRetentionResult:
    document = monitor_service.extend_retention(
        collaborators.store,
        collaborators.audit,
        document_id,
        payload.additional_years,
        utc_now(),
        actor_id=payload.actor_id or SYSTEM_ACTOR,
    )
    return ExtendRetentionResult(
        document_id=document.id,
        retention_extended_years=document.retention_extended_years,
    )
