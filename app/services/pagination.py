"""Zero-based page slicing for list endpoints."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

MAX_PAGE_SIZE = 100


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0

    @property
    def first(self) -> bool:
        return self.page == 0

    @property
    def last(self) -> bool:
        return self.page >= self.total_pages - 1


def paginate(db: Session, stmt: Select, *, page: int = 0, size: int = 20) -> Page:
    page = max(page, 0)
    size = min(max(size, 1), MAX_PAGE_SIZE)
    total = db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    items = list(db.scalars(stmt.offset(page * size).limit(size)))
    return Page(items=items, total=total, page=page, size=size)
