"""
Forward-only cursor pagination.

A cursor is the id of the last item of a page. Callers treat it as opaque and
send it back unchanged to get the next page.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from messenger.config import settings


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    next_cursor: Optional[int] = None


def clamp_limit(limit: Optional[int]) -> int:
    """
    Resolve a requested page size.

    Absent or non-positive values fall back to DEFAULT_PAGE_SIZE; anything above
    MAX_PAGE_SIZE is capped.
    """
    if limit is None or limit <= 0:
        return settings.DEFAULT_PAGE_SIZE
    return min(limit, settings.MAX_PAGE_SIZE)


def make_page(rows: Sequence[Any], limit: int, key: Callable[[Any], int] = lambda row: row.id) -> Page:
    """
    Build a page from rows already fetched in ascending id order.

    The cursor is present exactly when the page is full. A full page that
    happens to end the sequence still gets a cursor, and the follow-up request
    comes back empty.
    """
    items = list(rows)
    next_cursor = key(items[-1]) if items and len(items) >= limit else None
    return Page(items=items, next_cursor=next_cursor)
