import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_JSON", "false")

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_collaborators, get_db
from app.db import Base, SessionLocal, engine
from app.main import app
from app.models.ecm import FinalDisposition, RetentionCategory
from app.services.retention_catalog import CatalogEntry, RetentionCatalog
from mocks import make_collaborators


@pytest.fixture()
def db_session():
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture()
def collaborators():
    return make_collaborators()


@pytest.fixture()
def client(db_session, collaborators):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_collaborators] = lambda: collaborators
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


CATALOG_ROWS = [
    {
        "code": "FIS-01",
        "name": "Pièces comptables",
        "active_phase_years": 1,
        "semi_active_phase_years": 9,
        "final_disposition": FinalDisposition.destroy,
    },
    {
        "code": "SOC-01",
        "name": "Registres sociaux",
        "active_phase_years": 5,
        "semi_active_phase_years": 45,
        "final_disposition": FinalDisposition.archive_permanent,
    },
    {
        "code": "PRJ-01",
        "name": "Dossiers de projet",
        "active_phase_years": 2,
        "semi_active_phase_years": 8,
        "final_disposition": FinalDisposition.sample,
        "sample_percentage": 10,
    },
]


@pytest.fixture()
def catalog():
    return RetentionCatalog(CatalogEntry(**row) for row in CATALOG_ROWS)


@pytest.fixture()
def seeded_categories(db_session):
    rows = [RetentionCategory(**row) for row in CATALOG_ROWS]
    db_session.add_all(rows)
    db_session.commit()
    return rows
