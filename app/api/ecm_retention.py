from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_collaborators, get_db
from app.schemas.common import ListResponse
from app.schemas.ecm_retention import (
    RescheduleResultRead,
    RetentionCategoryCreate,
    RetentionCategoryRead,
    RetentionCategoryUpdate,
)
from app.services import retention_catalog as catalog_service
from app.services import transition_scheduler as scheduler_service
from app.services.collaborators import Collaborators
from app.services.common import utc_now

router = APIRouter(prefix="/ecm", tags=["ecm-retention"])


# ------------------------------------------------------------------
# RetentionCategory CRUD
# ------------------------------------------------------------------


@router.post(
    "/retention-categories",
    response_model=RetentionCategoryRead,
    status_code=status.HTTP_201_CREATED,
)
def create_retention_category(
    payload: RetentionCategoryCreate, db: Session = Depends(get_db)
) -> RetentionCategoryRead:
    return catalog_service.retention_categories.create(db, payload)


@router.get(
    "/retention-categories/{category_id}",
    response_model=RetentionCategoryRead,
)
def get_retention_category(
    category_id: str, db: Session = Depends(get_db)
) -> RetentionCategoryRead:
    return catalog_service.retention_categories.get(db, category_id)


@router.get(
    "/retention-categories/by-code/{code}",
    response_model=RetentionCategoryRead,
)
def get_retention_category_by_code(
    code: str, db: Session = Depends(get_db)
) -> RetentionCategoryRead:
    return catalog_service.retention_categories.get_by_code(db, code)


@router.get(
    "/retention-categories",
    response_model=ListResponse[RetentionCategoryRead],
)
def list_retention_categories(
    final_disposition: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="code"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    return catalog_service.retention_categories.list_response(
        db, final_disposition, is_active, order_by, order_dir, limit, offset
    )


@router.patch(
    "/retention-categories/{category_id}",
    response_model=RetentionCategoryRead,
)
def update_retention_category(
    category_id: str,
    payload: RetentionCategoryUpdate,
    db: Session = Depends(get_db),
) -> RetentionCategoryRead:
    return catalog_service.retention_categories.update(db, category_id, payload)


@router.delete(
    "/retention-categories/{category_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_retention_category(category_id: str, db: Session = Depends(get_db)) -> None:
    catalog_service.retention_categories.delete(db, category_id)


# ------------------------------------------------------------------
# Explicit re-schedule after a category edit
# ------------------------------------------------------------------


@router.post(
    "/retention-categories/by-code/{code}/reschedule",
    response_model=RescheduleResultRead,
)
def reschedule_retention_category(
    code: str,
    now: datetime | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> RescheduleResultRead:
    catalog_service.retention_categories.get_by_code(db, code)
    result = scheduler_service.reschedule_category(
        db,
        code,
        collaborators.store,
        catalog_service.load_catalog(db),
        now or utc_now(),
    )
    return RescheduleResultRead(
        code=result.code,
        updated=result.updated,
        cancelled=result.cancelled,
        unchanged=result.unchanged,
    )
