import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _resolve_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    environment = os.getenv("ENVIRONMENT", "").strip().lower()
    if environment == "development":
        return "postgresql+psycopg://localhost:5434/archive_retention"

    raise ValueError(
        "DATABASE_URL is not set. Set DATABASE_URL for non-development "
        "environments or set ENVIRONMENT=development for local defaults."
    )


def _split_ids(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = _resolve_database_url()
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv(
        "CELERY_RESULT_BACKEND", "redis://localhost:6379/1"
    )

    # Transition queue
    transition_workers: int = int(os.getenv("TRANSITION_WORKERS", "4"))
    collaborator_timeout_seconds: float = float(
        os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "30")
    )
    lease_ttl_seconds: int = int(os.getenv("LEASE_TTL_SECONDS", "900"))

    # Retention configuration loaded at startup
    retention_catalog_path: str = os.getenv(
        "RETENTION_CATALOG_PATH", "config/retention_catalog.json"
    )
    classification_rules_path: str = os.getenv(
        "CLASSIFICATION_RULES_PATH", "config/classification_rules.json"
    )
    retention_officer_ids: tuple[str, ...] = _split_ids(
        os.getenv("RETENTION_OFFICER_IDS", "")
    )

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = os.getenv("LOG_JSON", "true").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }

    # Branding
    brand_name: str = os.getenv("BRAND_NAME", "Archive Retention")


settings = Settings()
