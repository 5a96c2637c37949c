# Overview: Page/limit parsing and paginated scans shared by list operations.

from __future__ import annotations

from typing import Any, Callable

from flask import current_app

from ..errors import InvalidInputError
from ..validation import parse_positive_int


def parse_bool(value: Any, field: str) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise InvalidInputError(f"{field} must be true or false")


def resolve_page(page: Any = None, limit: Any = None) -> tuple[int, int]:
    page_num = 1 if page is None else parse_positive_int(page, "page")
    page_size = current_app.config["DEFAULT_PAGE_SIZE"] if limit is None else parse_positive_int(limit, "limit")
    return page_num, min(page_size, current_app.config["MAX_PAGE_SIZE"])


def paginate(query, page: Any = None, limit: Any = None, serialize: Callable | None = None) -> dict:
    """
    Run a filtered, ordered query one page at a time.

    Returns {"count": total matching rows, "results": [...]}.
    """
    page_num, page_size = resolve_page(page, limit)
    count = query.order_by(None).count()
    rows = query.offset((page_num - 1) * page_size).limit(page_size).all()
    to_item = serialize or (lambda row: row.to_dict())
    return {"count": count, "results": [to_item(row) for row in rows]}


def paginate_list(items: list, page: Any = None, limit: Any = None, serialize: Callable | None = None) -> dict:
    """Same contract as paginate() for results filtered in Python."""
    page_num, page_size = resolve_page(page, limit)
    start = (page_num - 1) * page_size
    to_item = serialize or (lambda row: row.to_dict())
    return {"count": len(items), "results": [to_item(row) for row in items[start:start + page_size]]}
