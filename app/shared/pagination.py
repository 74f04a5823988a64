"""Pagination utilities.

Chat history is paged backwards with a cursor: each page holds the newest
``limit`` rows strictly older than the cursor, returned oldest first, and the
oldest id on the page becomes the cursor for the next call. Calls are
independent, so a caller can restart from any id it has already seen.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

T = TypeVar("T")


class CursorParams(BaseModel):
    """Cursor pagination parameters."""

    before: int | None = Field(default=None, ge=1, description="Only return rows with a smaller id")
    limit: int = Field(default=50, ge=1, le=200, description="Page size")


class CursorPage(BaseModel, Generic[T]):
    """Generic cursor page."""

    items: list[T]
    has_more: bool
    next_before: int | None = None


async def paginate_before(
    db: AsyncSession,
    query: Select,
    id_column: Any,
    order_columns: tuple[Any, ...],
    params: CursorParams,
) -> dict[str, Any]:
    """
    Fetch one backwards page of a SQLAlchemy query.

    Args:
        db: Database session
        query: SQLAlchemy select query, already filtered
        id_column: Monotonic id column used as the cursor
        order_columns: Columns defining ascending order, id last as tie-break
        params: Cursor parameters

    Returns:
        Dictionary with ascending items, ``has_more`` and ``next_before``
    """
    if params.before is not None:
        query = query.where(id_column < params.before)

    # One extra row tells us whether an older page exists
    paged = query.order_by(*(column.desc() for column in order_columns)).limit(params.limit + 1)
    result = await db.execute(paged)
    rows = list(result.scalars().all())

    has_more = len(rows) > params.limit
    rows = rows[: params.limit]
    rows.reverse()

    return {
        "items": rows,
        "has_more": has_more,
        "next_before": rows[0].id if rows and has_more else None,
    }
