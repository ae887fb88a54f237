from __future__ import annotations

import math
from datetime import UTC, date, datetime


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def parse_iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def casefold_set(values: list[str] | None) -> list[str]:
    """Lowercased, stripped, de-duplicated values in first-seen order."""
    seen: dict[str, None] = {}
    for value in values or []:
        if value is None:
            continue
        normalized = normalize_whitespace(str(value)).lower()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total / limit)


def page_offset(page: int, limit: int) -> int:
    # Pages are 1-indexed; anything below 1 reads the first page.
    return (max(page, 1) - 1) * limit
