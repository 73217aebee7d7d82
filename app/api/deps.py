from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.services.collaborators import Collaborators, build_collaborators


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_collaborators(db: Session = Depends(get_db)) -> Collaborators:
    return build_collaborators(db)
