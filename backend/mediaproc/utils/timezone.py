"""UTC helpers for lock timestamps.

Lock records are written and compared in UTC so that ages computed by a
recovering process do not depend on the host's local timezone.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware UTC.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_isoformat(dt: datetime) -> str:
    """Convert datetime to ISO 8601 format with Z suffix for UTC."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def seconds_since(dt: datetime, now: Optional[datetime] = None) -> float:
    """Seconds elapsed between dt and now (negative if dt is in the future)."""
    reference = ensure_utc(now) if now is not None else utc_now()
    return (reference - ensure_utc(dt)).total_seconds()
