"""Offset pagination for list queries"""

import math
from dataclasses import dataclass, field
from typing import Any, Generic, List, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from utils.exception_handler import ValidationError

T = TypeVar("T")

MAX_PAGE_SIZE = 100


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


def paginate(session: Session, stmt: Select, page: int = 1, limit: int = 20) -> Page[Any]:
    """Run ``stmt`` (already filtered and ordered) for one page plus a total count"""
    if page < 1:
        raise ValidationError("page must be a positive integer")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    items = session.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return Page(items=list(items), total=total, page=page, limit=limit)
