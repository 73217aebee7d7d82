import logging

from app.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.retention.run_transition_cycle", ignore_result=True)
def run_transition_cycle() -> None:
    """Periodic pass: fail interrupted tasks, schedule due transitions, run the queue."""
    from app.db import SessionLocal
    from app.services.collaborators import build_collaborators
    from app.services.common import utc_now
    from app.services.retention_catalog import load_catalog
    from app.services.transition_queue import TransitionQueue
    from app.services.transition_scheduler import schedule_transitions

    db = SessionLocal()
    try:
        collaborators = build_collaborators(db)
        with TransitionQueue(collaborators) as queue:
            queue.recover_interrupted(db)
            scheduled = schedule_transitions(
                db, collaborators.store, load_catalog(db), utc_now()
            )
            db.commit()
            result = queue.process_all(db)
        logger.info(
            "Transition cycle: %d scheduled, %d completed, %d failed, %d skipped",
            scheduled.scheduled,
            result.completed,
            result.failed,
            result.skipped,
        )
    except Exception as e:
        db.rollback()
        logger.exception("Failed to run transition cycle: %s", e)
    finally:
        db.close()


@celery_app.task(
    name="app.tasks.retention.recover_interrupted_transitions", ignore_result=True
)
def recover_interrupted_transitions() -> None:
    from app.db import SessionLocal
    from app.services.collaborators import build_collaborators
    from app.services.transition_queue import TransitionQueue

    db = SessionLocal()
    try:
        with TransitionQueue(build_collaborators(db)) as queue:
            recovered = queue.recover_interrupted(db)
        if recovered:
            logger.warning("Marked %d interrupted transitions as failed", recovered)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to recover interrupted transitions: %s", e)
    finally:
        db.close()


@celery_app.task(name="app.tasks.retention.run_auto_archive_rules", ignore_result=True)
def run_auto_archive_rules() -> None:
    from app.db import SessionLocal
    from app.services.collaborators import build_collaborators
    from app.services.common import utc_now
    from app.services.ecm_auto_archive import auto_archive_rules

    db = SessionLocal()
    try:
        results = auto_archive_rules.run_due_rules(
            db, build_collaborators(db), utc_now()
        )
        db.commit()
        logger.info(
            "Ran %d auto-archive rules, %d documents processed",
            len(results),
            sum(results.values()),
        )
    except Exception as e:
        db.rollback()
        logger.exception("Failed to run auto-archive rules: %s", e)
    finally:
        db.close()


@celery_app.task(
    name="app.tasks.retention.notify_expiring_documents", ignore_result=True
)
def notify_expiring_documents() -> None:
    from app.config import settings
    from app.db import SessionLocal
    from app.services.collaborators import build_collaborators
    from app.services.common import utc_now
    from app.services.expiration_monitor import notify_expiring
    from app.services.retention_catalog import load_catalog

    db = SessionLocal()
    try:
        collaborators = build_collaborators(db)
        notify_expiring(
            collaborators.store,
            collaborators.notifications,
            load_catalog(db),
            utc_now(),
            list(settings.retention_officer_ids),
        )
    except Exception as e:
        logger.exception("Failed to notify expiring documents: %s", e)
    finally:
        db.close()


@celery_app.task(name="app.tasks.retention.dispatch_due_reminders", ignore_result=True)
def dispatch_due_reminders() -> None:
    from app.db import SessionLocal
    from app.services.collaborators import build_collaborators
    from app.services.common import utc_now
    from app.services.reminders import reminders

    db = SessionLocal()
    try:
        reminders.dispatch_due(db, build_collaborators(db).notifications, utc_now())
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("Failed to dispatch due reminders: %s", e)
    finally:
        db.close()
