"""Pagination helpers."""

from typing import Sequence, TypeVar

T = TypeVar("T")


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def newest_first(items: Sequence[T], limit: int, offset: int = 0) -> list[T]:
    """Slice an append-only (oldest-first) embedded list as newest-first pages."""
    limit, offset = paginate(limit, offset)
    ordered = list(reversed(items))
    return ordered[offset:offset + limit]
