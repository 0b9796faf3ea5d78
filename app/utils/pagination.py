from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlmodel import select

MAX_PAGE_SIZE = 500


def paginate(
    *,
    session,
    query,
    page: int = 1,
    limit: int = 10,
    transform: Optional[Callable[[Any], Any]] = None,
):
    """Run ``query`` one page at a time.

    ``transform`` is applied to each row while the session is still open,
    so lazy relationships can be read.
    """
    page = max(page, 1)
    limit = min(limit, MAX_PAGE_SIZE) if limit >= 1 else 10

    total = session.exec(
        select(func.count()).select_from(query.subquery())
    ).one()

    rows = session.exec(
        query.offset((page - 1) * limit).limit(limit)
    ).all()

    return {
        "total_items": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "limit": limit,
        "results": [transform(row) for row in rows] if transform else list(rows),
    }
