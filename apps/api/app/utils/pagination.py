"""Pagination for list endpoints built on 2.0-style ``select()`` statements."""

from dataclasses import dataclass
from typing import Any

from fastapi import Query
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200


@dataclass(frozen=True)
class PaginationParams:
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def get_pagination(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    per_page: int = Query(DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE),
) -> PaginationParams:
    """Query-string pagination dependency."""
    return PaginationParams(page=page, per_page=per_page)


def paginate(db: Session, stmt: Select, params: PaginationParams) -> tuple[list[Any], int]:
    """
    Count the full result, then fetch one page of it.

    ``stmt`` should already carry its ORDER BY.

    Returns:
        (rows for the page, total matching)
    """
    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    rows = db.execute(stmt.offset(params.offset).limit(params.per_page)).scalars().all()
    return list(rows), total


def page_count(total: int, per_page: int) -> int:
    if per_page <= 0:
        return 0
    return -(-total // per_page)
