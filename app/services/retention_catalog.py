from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import MappingProxyType

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvariantViolation, ValidationError
from app.models.ecm import FinalDisposition, RetentionCategory, RetentionPhase
from app.schemas.ecm_retention import RetentionCategoryCreate, RetentionCategoryUpdate
from app.services.common import (
    add_years,
    apply_ordering,
    apply_pagination,
    coerce_uuid,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def validate_category(
    code: str | None,
    active_phase_years: int | None,
    semi_active_phase_years: int | None,
    final_disposition: str | FinalDisposition | None,
    sample_percentage: int | None,
) -> FinalDisposition:
    if not code or not str(code).strip():
        raise ValidationError("Category code is required", field="code")
    if active_phase_years is None or active_phase_years < 0:
        raise ValidationError(
            "active_phase_years must be zero or more", field="active_phase_years"
        )
    if semi_active_phase_years is None or semi_active_phase_years < 0:
        raise ValidationError(
            "semi_active_phase_years must be zero or more",
            field="semi_active_phase_years",
        )
    try:
        disposition = FinalDisposition(final_disposition)
    except ValueError:
        raise ValidationError(
            f"Invalid final_disposition: {final_disposition}",
            field="final_disposition",
        )
    if disposition == FinalDisposition.sample:
        if sample_percentage is None:
            raise ValidationError(
                "sample disposition requires sample_percentage",
                field="sample_percentage",
            )
        if not 1 <= sample_percentage <= 100:
            raise ValidationError(
                "sample_percentage must be between 1 and 100",
                field="sample_percentage",
            )
    elif sample_percentage is not None:
        raise ValidationError(
            "sample_percentage is only allowed for sample disposition",
            field="sample_percentage",
        )
    return disposition


# ---------------------------------------------------------------------------
# In-memory catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CatalogEntry:
    code: str
    name: str
    active_phase_years: int
    semi_active_phase_years: int
    final_disposition: FinalDisposition
    sample_percentage: int | None = None
    sample_criteria: str | None = None
    description: str | None = None
    legal_reference: str | None = None

    @property
    def total_years(self) -> int:
        return self.active_phase_years + self.semi_active_phase_years

    def boundary(self, uploaded_at: datetime, target_phase: RetentionPhase) -> datetime:
        """Date a document uploaded at ``uploaded_at`` enters ``target_phase``."""
        target_phase = RetentionPhase(target_phase)
        if target_phase == RetentionPhase.semi_active:
            return add_years(uploaded_at, self.active_phase_years)
        if target_phase == RetentionPhase.final:
            return add_years(uploaded_at, self.total_years)
        return uploaded_at

    @classmethod
    def from_model(cls, category: RetentionCategory) -> "CatalogEntry":
        return cls(
            code=category.code,
            name=category.name,
            active_phase_years=category.active_phase_years,
            semi_active_phase_years=category.semi_active_phase_years,
            final_disposition=FinalDisposition(category.final_disposition),
            sample_percentage=category.sample_percentage,
            sample_criteria=category.sample_criteria,
            description=category.description,
            legal_reference=category.legal_reference,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "CatalogEntry":
        disposition = validate_category(
            data.get("code"),
            data.get("active_phase_years"),
            data.get("semi_active_phase_years"),
            data.get("final_disposition"),
            data.get("sample_percentage"),
        )
        return cls(
            code=data["code"],
            name=data.get("name") or data["code"],
            active_phase_years=data["active_phase_years"],
            semi_active_phase_years=data["semi_active_phase_years"],
            final_disposition=disposition,
            sample_percentage=data.get("sample_percentage"),
            sample_criteria=data.get("sample_criteria"),
            description=data.get("description"),
            legal_reference=data.get("legal_reference"),
        )


class RetentionCatalog:
    """Read-only mapping of category code to retention policy."""

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        by_code: dict[str, CatalogEntry] = {}
        for entry in entries:
            if entry.code in by_code:
                raise ValidationError(
                    f"Duplicate retention category: {entry.code}", field="code"
                )
            by_code[entry.code] = entry
        self._entries = MappingProxyType(by_code)

    def get(self, code: str | None) -> CatalogEntry | None:
        if code is None:
            return None
        return self._entries.get(code)

    def __contains__(self, code: object) -> bool:
        return code in self._entries

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def codes(self) -> list[str]:
        return sorted(self._entries)

    def total_years(self, code: str) -> int:
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(code)
        return entry.total_years


def load_catalog(db: Session) -> RetentionCatalog:
    rows = db.scalars(
        select(RetentionCategory)
        .where(RetentionCategory.is_active.is_(True))
        .order_by(RetentionCategory.code)
    ).all()
    return RetentionCatalog(CatalogEntry.from_model(row) for row in rows)


def read_catalog_file(path: str | Path) -> list[dict]:
    with open(path, encoding="utf-8") as handle:
        data = json.load(handle)
    categories = data.get("categories") if isinstance(data, dict) else data
    if not isinstance(categories, list):
        raise ValidationError(f"Retention catalog file {path} has no categories list")
    return categories


def load_catalog_file(path: str | Path) -> RetentionCatalog:
    return RetentionCatalog(CatalogEntry.from_dict(item) for item in read_catalog_file(path))


# ---------------------------------------------------------------------------
# RetentionCategories
# ---------------------------------------------------------------------------


class RetentionCategories(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: RetentionCategoryCreate) -> RetentionCategory:
        disposition = validate_category(
            payload.code,
            payload.active_phase_years,
            payload.semi_active_phase_years,
            payload.final_disposition,
            payload.sample_percentage,
        )
        existing = db.scalars(
            select(RetentionCategory).where(RetentionCategory.code == payload.code)
        ).first()
        if existing is not None:
            raise InvariantViolation(
                f"Retention category {payload.code} already exists"
            )

        data = payload.model_dump()
        data["final_disposition"] = disposition
        category = RetentionCategory(**data)
        db.add(category)
        db.flush()
        db.refresh(category)
        logger.info("Created retention category %s", category.code)
        return category

    @staticmethod
    def get(db: Session, category_id: str) -> RetentionCategory:
        category = db.get(RetentionCategory, coerce_uuid(category_id))
        if not category:
            raise HTTPException(status_code=404, detail="Retention category not found")
        return category

    @staticmethod
    def get_by_code(db: Session, code: str) -> RetentionCategory:
        category = db.scalars(
            select(RetentionCategory).where(RetentionCategory.code == code)
        ).first()
        if not category:
            raise HTTPException(status_code=404, detail="Retention category not found")
        return category

    @staticmethod
    def list(
        db: Session,
        final_disposition: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[RetentionCategory]:
        stmt = select(RetentionCategory)
        if final_disposition is not None:
            try:
                disposition = FinalDisposition(final_disposition)
            except ValueError:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid final_disposition: {final_disposition}",
                )
            stmt = stmt.where(RetentionCategory.final_disposition == disposition)
        if is_active is None:
            stmt = stmt.where(RetentionCategory.is_active.is_(True))
        else:
            stmt = stmt.where(RetentionCategory.is_active == is_active)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "code": RetentionCategory.code,
                "name": RetentionCategory.name,
                "created_at": RetentionCategory.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, category_id: str, payload: RetentionCategoryUpdate
    ) -> RetentionCategory:
        category = db.get(RetentionCategory, coerce_uuid(category_id))
        if not category:
            raise HTTPException(status_code=404, detail="Retention category not found")
        data = payload.model_dump(exclude_unset=True)
        merged = {
            "active_phase_years": category.active_phase_years,
            "semi_active_phase_years": category.semi_active_phase_years,
            "final_disposition": category.final_disposition,
            "sample_percentage": category.sample_percentage,
        }
        merged.update(data)
        if "final_disposition" in data and "sample_percentage" not in data:
            if FinalDisposition(data["final_disposition"]) != FinalDisposition.sample:
                merged["sample_percentage"] = None
                data["sample_percentage"] = None
        data["final_disposition"] = validate_category(
            category.code,
            merged["active_phase_years"],
            merged["semi_active_phase_years"],
            merged["final_disposition"],
            merged["sample_percentage"],
        )
        for key, value in data.items():
            setattr(category, key, value)
        db.flush()
        db.refresh(category)
        logger.info("Updated retention category %s", category.code)
        return category

    @staticmethod
    def delete(db: Session, category_id: str) -> None:
        category = db.get(RetentionCategory, coerce_uuid(category_id))
        if not category:
            raise HTTPException(status_code=404, detail="Retention category not found")
        category.is_active = False
        db.flush()
        logger.info("Soft-deleted retention category %s", category.code)

    @staticmethod
    def seed_from_file(db: Session, path: str | Path) -> int:
        """Insert categories from the catalog file whose code is not stored yet."""
        entries = load_catalog_file(path)
        existing = set(db.scalars(select(RetentionCategory.code)).all())
        created = 0
        for entry in entries:
            if entry.code in existing:
                continue
            db.add(
                RetentionCategory(
                    code=entry.code,
                    name=entry.name,
                    description=entry.description,
                    active_phase_years=entry.active_phase_years,
                    semi_active_phase_years=entry.semi_active_phase_years,
                    final_disposition=entry.final_disposition,
                    sample_percentage=entry.sample_percentage,
                    sample_criteria=entry.sample_criteria,
                    legal_reference=entry.legal_reference,
                )
            )
            created += 1
        db.flush()
        if created:
            logger.info("Seeded %d retention categories from %s", created, path)
        return created


retention_categories = RetentionCategories()
