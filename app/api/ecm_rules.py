from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_collaborators, get_db
from app.schemas.common import ListResponse
from app.schemas.ecm_rules import (
    AppliedActionRead,
    AutoArchiveRuleCreate,
    AutoArchiveRuleRead,
    AutoArchiveRuleUpdate,
    AutoArchiveRunResult,
    ClassificationRuleCreate,
    ClassificationRuleRead,
    ClassificationRuleUpdate,
    ClassifyDocumentRequest,
    ClassifyDocumentResult,
    RunRuleRequest,
    RunRuleResult,
)
from app.services import ecm_auto_archive as archive_service
from app.services import ecm_classification as classification_service
from app.services.collaborators import Collaborators
from app.services.common import utc_now

router = APIRouter(prefix="/ecm", tags=["ecm-rules"])


# ------------------------------------------------------------------
# ClassificationRule CRUD
# ------------------------------------------------------------------


@router.post(
    "/classification-rules",
    response_model=ClassificationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_classification_rule(
    payload: ClassificationRuleCreate, db: Session = Depends(get_db)
) -> ClassificationRuleRead:
    return classification_service.classification_rules.create(db, payload)


@router.get(
    "/classification-rules/{rule_id}",
    response_model=ClassificationRuleRead,
)
def get_classification_rule(
    rule_id: str, db: Session = Depends(get_db)
) -> ClassificationRuleRead:
    return classification_service.classification_rules.get(db, rule_id)


@router.get(
    "/classification-rules",
    response_model=ListResponse[ClassificationRuleRead],
)
def list_classification_rules(
    is_active: bool | None = None,
    run_on_upload: bool | None = None,
    order_by: str = Query(default="priority"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    return classification_service.classification_rules.list_response(
        db, is_active, run_on_upload, order_by, order_dir, limit, offset
    )


@router.patch(
    "/classification-rules/{rule_id}",
    response_model=ClassificationRuleRead,
)
def update_classification_rule(
    rule_id: str,
    payload: ClassificationRuleUpdate,
    db: Session = Depends(get_db),
) -> ClassificationRuleRead:
    return classification_service.classification_rules.update(db, rule_id, payload)


@router.delete(
    "/classification-rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_classification_rule(rule_id: str, db: Session = Depends(get_db)) -> None:
    classification_service.classification_rules.delete(db, rule_id)


@router.post(
    "/classification-rules/{rule_id}/run",
    response_model=RunRuleResult,
)
def run_classification_rule(
    rule_id: str,
    payload: RunRuleRequest | None = None,
    now: datetime | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> RunRuleResult:
    document_ids = None
    if payload is not None and payload.document_ids is not None:
        document_ids = [str(i) for i in payload.document_ids]
    changed = classification_service.classification_rules.run_rule(
        db, rule_id, collaborators, now or utc_now(), document_ids=document_ids
    )
    return RunRuleResult(rule_id=rule_id, documents_changed=changed)


@router.post(
    "/documents/{document_id}/classify",
    response_model=ClassifyDocumentResult,
)
def classify_document(
    document_id: str,
    payload: ClassifyDocumentRequest | None = None,
    now: datetime | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> ClassifyDocumentResult:
    on_upload = payload.on_upload if payload is not None else False
    outcome = classification_service.classification_rules.classify_document(
        db, document_id, collaborators, now or utc_now(), on_upload=on_upload
    )
    return ClassifyDocumentResult(
        document_id=outcome.document_id,
        applied=[AppliedActionRead.model_validate(a) for a in outcome.applied],
        changed=outcome.changed,
    )


# ------------------------------------------------------------------
# AutoArchiveRule CRUD
# ------------------------------------------------------------------


@router.post(
    "/auto-archive-rules",
    response_model=AutoArchiveRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_auto_archive_rule(
    payload: AutoArchiveRuleCreate, db: Session = Depends(get_db)
) -> AutoArchiveRuleRead:
    return archive_service.auto_archive_rules.create(db, payload)


@router.get(
    "/auto-archive-rules/{rule_id}",
    response_model=AutoArchiveRuleRead,
)
def get_auto_archive_rule(
    rule_id: str, db: Session = Depends(get_db)
) -> AutoArchiveRuleRead:
    return archive_service.auto_archive_rules.get(db, rule_id)


@router.get(
    "/auto-archive-rules",
    response_model=ListResponse[AutoArchiveRuleRead],
)
def list_auto_archive_rules(
    is_active: bool | None = None,
    run_frequency: str | None = None,
    order_by: str = Query(default="priority"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    return archive_service.auto_archive_rules.list_response(
        db, is_active, run_frequency, order_by, order_dir, limit, offset
    )


@router.patch(
    "/auto-archive-rules/{rule_id}",
    response_model=AutoArchiveRuleRead,
)
def update_auto_archive_rule(
    rule_id: str,
    payload: AutoArchiveRuleUpdate,
    db: Session = Depends(get_db),
) -> AutoArchiveRuleRead:
    return archive_service.auto_archive_rules.update(db, rule_id, payload)


@router.delete(
    "/auto-archive-rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_auto_archive_rule(rule_id: str, db: Session = Depends(get_db)) -> None:
    archive_service.auto_archive_rules.delete(db, rule_id)


@router.post(
    "/auto-archive-rules/{rule_id}/run",
    response_model=AutoArchiveRunResult,
)
def run_auto_archive_rule(
    rule_id: str,
    now: datetime | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> AutoArchiveRunResult:
    processed = archive_service.auto_archive_rules.run_rule(
        db, rule_id, collaborators, now or utc_now()
    )
    return AutoArchiveRunResult(rule_id=rule_id, documents_processed=processed)
