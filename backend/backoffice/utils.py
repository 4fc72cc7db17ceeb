from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_utc(value: str | datetime) -> datetime:
    """Parse a date string or datetime into a tz-aware UTC datetime.

    Handles ISO 8601 strings (with or without Z/offset) and bare datetimes.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def pagination_stages(page: int | None = None, per_page: int | None = None) -> list[dict[str, Any]]:
    """$skip/$limit aggregation stages for 1-based pages; empty when either is missing."""
    if not page or not per_page:
        return []
    offset = page * per_page - per_page
    return [{"$skip": offset}, {"$limit": per_page}]
