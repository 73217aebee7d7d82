from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_ready

from app.config import settings

celery_app = Celery(
    "archive_retention",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.retention", "app.tasks.notifications"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=3600,
)

celery_app.conf.beat_schedule = {
    "retention-schedule-and-process-transitions": {
        "task": "app.tasks.retention.run_transition_cycle",
        "schedule": crontab(minute=0),
        "options": {"expires": 3000},
    },
    "retention-run-auto-archive-rules": {
        "task": "app.tasks.retention.run_auto_archive_rules",
        "schedule": crontab(minute=30),
    },
    "retention-notify-expiring-documents": {
        "task": "app.tasks.retention.notify_expiring_documents",
        "schedule": crontab(hour=6, minute=0),
    },
    "retention-dispatch-due-reminders": {
        "task": "app.tasks.retention.dispatch_due_reminders",
        "schedule": crontab(minute=15),
    },
}


@worker_ready.connect
def _recover_interrupted_transitions(**kwargs) -> None:
    from app.tasks.retention import recover_interrupted_transitions

    recover_interrupted_transitions()
