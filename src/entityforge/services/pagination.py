"""Page/limit validation and pagination metadata."""

import math
from dataclasses import dataclass
from typing import Any

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 200


@dataclass(frozen=True)
class PageRequest:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def _positive_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 1 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 1 else None
    if isinstance(value, str):
        value = value.strip()
        # isdigit alone admits superscripts such as "²", which int() rejects
        if value.isascii() and value.isdigit() and int(value) >= 1:
            return int(value)
    return None


def validate_params(page: Any = None, limit: Any = None) -> PageRequest:
    """Normalize pagination input.

    Invalid or missing values fall back to defaults rather than raising;
    limits above ``MAX_LIMIT`` are capped.
    """
    safe_page = _positive_int(page) or DEFAULT_PAGE
    safe_limit = _positive_int(limit) or DEFAULT_LIMIT
    return PageRequest(page=safe_page, limit=min(safe_limit, MAX_LIMIT))


def generate_metadata(page: int, limit: int, total: int) -> dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
