from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.common import ListResponse
from app.schemas.ecm_reminders import (
    AcknowledgeRequest,
    AcknowledgeResult,
    DocumentReminderCreate,
    DocumentReminderRead,
    DocumentReminderUpdate,
)
from app.services import reminders as reminder_service
from app.services.common import utc_now

router = APIRouter(prefix="/ecm", tags=["ecm-reminders"])


@router.post(
    "/reminders",
    response_model=DocumentReminderRead,
    status_code=status.HTTP_201_CREATED,
)
def create_reminder(
    payload: DocumentReminderCreate, db: Session = Depends(get_db)
) -> DocumentReminderRead:
    return reminder_service.reminders.create(db, payload)


@router.get("/reminders/due", response_model=list[DocumentReminderRead])
def list_due_reminders(
    now: datetime | None = None, db: Session = Depends(get_db)
) -> list[DocumentReminderRead]:
    return reminder_service.reminders.due(db, now or utc_now())


@router.get("/reminders/{reminder_id}", response_model=DocumentReminderRead)
def get_reminder(
    reminder_id: str, db: Session = Depends(get_db)
) -> DocumentReminderRead:
    return reminder_service.reminders.get(db, reminder_id)


@router.get("/reminders", response_model=ListResponse[DocumentReminderRead])
def list_reminders(
    document_id: str | None = None,
    acknowledged: bool | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="reminder_date"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    return reminder_service.reminders.list_response(
        db, document_id, acknowledged, is_active, order_by, order_dir, limit, offset
    )


@router.patch("/reminders/{reminder_id}", response_model=DocumentReminderRead)
def update_reminder(
    reminder_id: str,
    payload: DocumentReminderUpdate,
    db: Session = Depends(get_db),
) -> DocumentReminderRead:
    return reminder_service.reminders.update(db, reminder_id, payload)


@router.delete("/reminders/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(reminder_id: str, db: Session = Depends(get_db)) -> None:
    reminder_service.reminders.delete(db, reminder_id)


@router.post(
    "/reminders/{reminder_id}/acknowledge",
    response_model=AcknowledgeResult,
)
def acknowledge_reminder(
    reminder_id: str,
    payload: AcknowledgeRequest,
    db: Session = Depends(get_db),
) -> AcknowledgeResult:
    outcome = reminder_service.reminders.acknowledge(
        db, reminder_id, payload.acknowledged_by, utc_now()
    )
    return AcknowledgeResult(
        reminder=DocumentReminderRead.model_validate(outcome.reminder),
        spawned=(
            DocumentReminderRead.model_validate(outcome.spawned)
            if outcome.spawned is not None
            else None
        ),
    )
