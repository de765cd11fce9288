"""Offset pagination defaults and query-parameter parsing."""

from __future__ import annotations

DEFAULT_LIST_LIMIT = 10
DEFAULT_LIST_OFFSET = 0


def normalize_page(limit: int, offset: int) -> tuple[int, int]:
    """Replace out-of-range pagination values with defaults.

    A non-positive limit becomes DEFAULT_LIST_LIMIT and a negative offset
    becomes 0. No upper bound is applied to limit.
    """
    if limit <= 0:
        limit = DEFAULT_LIST_LIMIT
    offset = max(offset, DEFAULT_LIST_OFFSET)
    return limit, offset


def parse_page_param(raw: str | None, default: int) -> int:
    """Parse a pagination query parameter.

    Missing or empty values fall back to default.

    Raises:
        ValueError: If the value is not an integer
    """
    if raw is None or raw.strip() == "":
        return default
    return int(raw.strip())
