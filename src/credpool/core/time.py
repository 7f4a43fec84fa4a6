"""Millisecond clock helpers.

Every instant stored in a pool document is a Unix timestamp in milliseconds.
"""

from datetime import UTC, datetime


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def ms_to_iso(value: int | None) -> str | None:
    """Render a millisecond timestamp as ISO 8601, passing None through."""
    if value is None:
        return None
    return ms_to_datetime(value).isoformat()
