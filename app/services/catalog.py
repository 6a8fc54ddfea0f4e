"""Read side of the test catalog and center directory."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.screening import DiagnosticCenter, TestStandard
from app.services.errors import CenterNotFound, NotFoundError
from app.services.pagination import Page, paginate


def list_test_standards(db: Session, *, page: int = 0, size: int = 20) -> Page:
    stmt = (
        select(TestStandard)
        .where(TestStandard.active.is_(True))
        .order_by(TestStandard.display_order, TestStandard.name)
    )
    return paginate(db, stmt, page=page, size=size)


def get_test_standard(db: Session, test_standard_id: UUID) -> TestStandard:
    standard = db.get(TestStandard, test_standard_id)
    if standard is None or not standard.active:
        raise NotFoundError("Test not found")
    return standard


def get_test_standard_by_slug(db: Session, slug: str) -> TestStandard:
    standard = db.scalars(
        select(TestStandard).where(TestStandard.slug == slug, TestStandard.active.is_(True))
    ).first()
    if standard is None:
        raise NotFoundError("Test not found")
    return standard


def get_center(db: Session, center_id: UUID) -> DiagnosticCenter:
    """Active centers only; pending or suspended centers are not listed publicly."""
    center = db.get(DiagnosticCenter, center_id)
    if center is None or not center.is_active:
        raise CenterNotFound()
    return center
