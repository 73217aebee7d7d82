import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.ecm_expirations import router as ecm_expirations_router
from app.api.ecm_reminders import router as ecm_reminders_router
from app.api.ecm_retention import router as ecm_retention_router
from app.api.ecm_rules import router as ecm_rules_router
from app.api.ecm_transitions import router as ecm_transitions_router
from app.config import settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.services.ecm_classification import classification_rules
from app.services.retention_catalog import retention_categories

logger = logging.getLogger(__name__)


def seed_configuration(db) -> None:
    catalog_path = Path(settings.retention_catalog_path)
    if catalog_path.exists():
        retention_categories.seed_from_file(db, catalog_path)
    else:
        logger.warning("Retention catalog file %s not found", catalog_path)
    rules_path = Path(settings.classification_rules_path)
    if rules_path.exists():
        classification_rules.seed_from_file(db, rules_path)
    else:
        logger.warning("Classification rules file %s not found", rules_path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        seed_configuration(db)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to seed retention configuration")
        raise
    finally:
        db.close()
    yield


app = FastAPI(title=f"{settings.brand_name} API", lifespan=lifespan)

configure_logging()
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(ecm_retention_router)
_include_api_router(ecm_rules_router)
_include_api_router(ecm_transitions_router)
_include_api_router(ecm_expirations_router)
_include_api_router(ecm_reminders_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
