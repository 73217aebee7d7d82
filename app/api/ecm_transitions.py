from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_collaborators, get_db
from app.schemas.common import ListResponse
from app.schemas.ecm_transitions import (
    QueueRunRead,
    RecoverRead,
    ScheduleRunRead,
    TaskOutcomeRead,
    TransitionTaskCreate,
    TransitionTaskRead,
)
from app.services import transition_queue as queue_service
from app.services import transition_scheduler as scheduler_service
from app.services.collaborators import Collaborators
from app.services.common import utc_now
from app.services.retention_catalog import load_catalog

router = APIRouter(prefix="/ecm", tags=["ecm-transitions"])


@router.post(
    "/transition-tasks",
    response_model=TransitionTaskRead,
    status_code=status.HTTP_201_CREATED,
)
def enqueue_transition_task(
    payload: TransitionTaskCreate, db: Session = Depends(get_db)
) -> TransitionTaskRead:
    return queue_service.transition_tasks.enqueue(db, payload)


@router.get(
    "/transition-tasks/{task_id}",
    response_model=TransitionTaskRead,
)
def get_transition_task(
    task_id: str, db: Session = Depends(get_db)
) -> TransitionTaskRead:
    return queue_service.transition_tasks.get(db, task_id)


@router.get(
    "/transition-tasks",
    response_model=ListResponse[TransitionTaskRead],
)
def list_transition_tasks(
    status: str | None = None,
    document_id: str | None = None,
    retention_category: str | None = None,
    order_by: str = Query(default="scheduled_for"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> dict:
    return queue_service.transition_tasks.list_response(
        db,
        status,
        document_id,
        retention_category,
        order_by,
        order_dir,
        limit,
        offset,
    )


@router.post(
    "/transition-tasks/{task_id}/retry",
    response_model=TransitionTaskRead,
)
def retry_transition_task(
    task_id: str, db: Session = Depends(get_db)
) -> TransitionTaskRead:
    return queue_service.transition_tasks.retry(db, task_id)


@router.delete(
    "/transition-tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def cancel_transition_task(task_id: str, db: Session = Depends(get_db)) -> None:
    queue_service.transition_tasks.cancel(db, task_id)


@router.post(
    "/transition-tasks/{task_id}/process",
    response_model=TaskOutcomeRead,
)
def process_transition_task(
    task_id: str,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> TaskOutcomeRead:
    with queue_service.TransitionQueue(collaborators) as queue:
        outcome = queue.process_one(db, task_id)
    return TaskOutcomeRead.model_validate(outcome)


@router.post("/transitions/process", response_model=QueueRunRead)
def process_pending_transitions(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> QueueRunRead:
    with queue_service.TransitionQueue(collaborators) as queue:
        result = queue.process_all(db)
    return QueueRunRead.model_validate(result)


@router.post("/transitions/schedule", response_model=ScheduleRunRead)
def schedule_transitions(
    now: datetime | None = None,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> ScheduleRunRead:
    result = scheduler_service.schedule_transitions(
        db, collaborators.store, load_catalog(db), now or utc_now()
    )
    return ScheduleRunRead.model_validate(result)


@router.post("/transitions/recover", response_model=RecoverRead)
def recover_interrupted_transitions(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> RecoverRead:
    with queue_service.TransitionQueue(collaborators) as queue:
        recovered = queue.recover_interrupted(db)
    return RecoverRead(recovered=recovered)
