from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import CollaboratorFailure, ValidationError
from app.models.ecm import DocumentReminder, NotificationChannel, ReminderType
from app.schemas.ecm_reminders import DocumentReminderCreate, DocumentReminderUpdate
from app.services.collaborators import NotificationSink
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    ensure_utc,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _validate_reminder(data: dict) -> ReminderType:
    try:
        reminder_type = ReminderType(data.get("reminder_type") or ReminderType.custom)
    except ValueError:
        raise ValidationError(
            f"Invalid reminder_type: {data.get('reminder_type')}", field="reminder_type"
        )
    if data.get("reminder_date") is None:
        raise ValidationError("reminder_date is required", field="reminder_date")
    days_before = data.get("days_before_alert")
    if days_before is None or days_before < 0:
        raise ValidationError(
            "days_before_alert must be zero or more", field="days_before_alert"
        )
    repeat = data.get("repeat_interval_days")
    if repeat is not None and repeat < 1:
        raise ValidationError(
            "repeat_interval_days must be at least 1", field="repeat_interval_days"
        )
    return reminder_type


def alert_date(reminder: DocumentReminder) -> datetime:
    return ensure_utc(reminder.reminder_date) - timedelta(
        days=reminder.days_before_alert or 0
    )


def is_due(reminder: DocumentReminder, now: datetime) -> bool:
    if not reminder.is_active or reminder.acknowledged_at is not None:
        return False
    return ensure_utc(now) >= alert_date(reminder)


def due_reminders(
    reminders: Iterable[DocumentReminder], now: datetime
) -> list[DocumentReminder]:
    """Active, unacknowledged reminders whose alert window has opened."""
    due = [r for r in reminders if is_due(r, now)]
    due.sort(key=lambda r: (ensure_utc(r.reminder_date), str(r.id)))
    return due


@dataclass
class AcknowledgeOutcome:
    reminder: DocumentReminder
    spawned: DocumentReminder | None = None


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class Reminders(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: DocumentReminderCreate) -> DocumentReminder:
        data = payload.model_dump()
        data["reminder_type"] = _validate_reminder(data)
        reminder = DocumentReminder(**data)
        db.add(reminder)
        db.flush()
        db.refresh(reminder)
        logger.info("Created reminder %s for document %s", reminder.id, reminder.document_id)
        return reminder

    @staticmethod
    def get(db: Session, reminder_id: str) -> DocumentReminder:
        reminder = db.get(DocumentReminder, coerce_uuid(reminder_id))
        if not reminder:
            raise HTTPException(status_code=404, detail="Reminder not found")
        return reminder

    @staticmethod
    def list(
        db: Session,
        document_id: str | None,
        acknowledged: bool | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[DocumentReminder]:
        stmt = select(DocumentReminder)
        if document_id is not None:
            stmt = stmt.where(DocumentReminder.document_id == coerce_uuid(document_id))
        if acknowledged is True:
            stmt = stmt.where(DocumentReminder.acknowledged_at.is_not(None))
        elif acknowledged is False:
            stmt = stmt.where(DocumentReminder.acknowledged_at.is_(None))
        if is_active is None:
            stmt = stmt.where(DocumentReminder.is_active.is_(True))
        else:
            stmt = stmt.where(DocumentReminder.is_active == is_active)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "reminder_date": DocumentReminder.reminder_date,
                "created_at": DocumentReminder.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, reminder_id: str, payload: DocumentReminderUpdate
    ) -> DocumentReminder:
        reminder = db.get(DocumentReminder, coerce_uuid(reminder_id))
        if not reminder:
            raise HTTPException(status_code=404, detail="Reminder not found")
        data = payload.model_dump(exclude_unset=True)
        merged = {
            "reminder_type": reminder.reminder_type,
            "reminder_date": reminder.reminder_date,
            "days_before_alert": reminder.days_before_alert,
            "repeat_interval_days": reminder.repeat_interval_days,
        }
        merged.update(data)
        reminder_type = _validate_reminder(merged)
        if "reminder_type" in data:
            data["reminder_type"] = reminder_type
        for key, value in data.items():
            setattr(reminder, key, value)
        db.flush()
        db.refresh(reminder)
        logger.info("Updated reminder %s", reminder.id)
        return reminder

    @staticmethod
    def delete(db: Session, reminder_id: str) -> None:
        reminder = db.get(DocumentReminder, coerce_uuid(reminder_id))
        if not reminder:
            raise HTTPException(status_code=404, detail="Reminder not found")
        reminder.is_active = False
        db.flush()
        logger.info("Soft-deleted reminder %s", reminder_id)

    @staticmethod
    def due(db: Session, now: datetime) -> list[DocumentReminder]:
        candidates = db.scalars(
            select(DocumentReminder).where(
                DocumentReminder.is_active.is_(True),
                DocumentReminder.acknowledged_at.is_(None),
            )
        ).all()
        return due_reminders(candidates, now)

    @staticmethod
    def acknowledge(
        db: Session, reminder_id: str, actor_id: str, now: datetime
    ) -> AcknowledgeOutcome:
        """Acknowledge once; later calls return the reminder unchanged."""
        reminder = Reminders.get(db, reminder_id)
        if reminder.acknowledged_at is not None:
            return AcknowledgeOutcome(reminder=reminder)

        reminder.acknowledged_at = now
        reminder.acknowledged_by = actor_id
        spawned = None
        if reminder.repeat_interval_days:
            spawned = DocumentReminder(
                document_id=reminder.document_id,
                reminder_type=reminder.reminder_type,
                title=reminder.title,
                description=reminder.description,
                reminder_date=ensure_utc(reminder.reminder_date)
                + timedelta(days=reminder.repeat_interval_days),
                days_before_alert=reminder.days_before_alert,
                repeat_interval_days=reminder.repeat_interval_days,
                notify_email=reminder.notify_email,
                notify_in_app=reminder.notify_in_app,
                notify_users=list(reminder.notify_users or []) or None,
                is_active=True,
                created_by=reminder.created_by,
                parent_reminder_id=reminder.id,
            )
            db.add(spawned)
        db.flush()
        db.refresh(reminder)
        if spawned is not None:
            db.refresh(spawned)
            logger.info("Reminder %s repeats as %s", reminder.id, spawned.id)
        logger.info("Reminder %s acknowledged by %s", reminder.id, actor_id)
        return AcknowledgeOutcome(reminder=reminder, spawned=spawned)

    @staticmethod
    def dispatch_due(db: Session, sink: NotificationSink, now: datetime) -> int:
        """Send due reminders, at most once per day each; returns reminders sent."""
        sent = 0
        for reminder in Reminders.due(db, now):
            last = reminder.last_notified_at
            if last is not None and ensure_utc(now) - ensure_utc(last) < timedelta(days=1):
                continue
            recipients = list(reminder.notify_users or []) or [reminder.created_by]
            payload = {
                "title": f"Reminder: {reminder.title}",
                "body": reminder.description
                or f"Reminder due on {ensure_utc(reminder.reminder_date).date().isoformat()}",
                "reminder_id": str(reminder.id),
                "document_id": str(reminder.document_id),
                "reminder_type": reminder.reminder_type.value,
                "reminder_date": ensure_utc(reminder.reminder_date).isoformat(),
            }
            channels = []
            if reminder.notify_email:
                channels.append(NotificationChannel.email)
            if reminder.notify_in_app:
                channels.append(NotificationChannel.in_app)
            if not channels:
                continue
            try:
                for channel in channels:
                    sink.send(channel, recipients, payload)
            except CollaboratorFailure as exc:
                logger.warning(
                    "Could not dispatch reminder %s: %s",
                    reminder.id,
                    exc,
                    extra={"document_id": reminder.document_id},
                )
                continue
            reminder.last_notified_at = now
            sent += 1
        db.flush()
        if sent:
            logger.info("Dispatched %d due reminders", sent)
        return sent


reminders = Reminders()
