"""
UTC time helpers shared by the ingestion pipeline and the read endpoints.

Stored timestamps are ISO-8601 strings in UTC with millisecond precision and
a ``Z`` suffix, so lexicographic order matches chronological order.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``; naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_date(dt: datetime) -> date:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()


def utc_day_bounds(dt: datetime) -> Tuple[str, str]:
    """Return ``[midnight, next midnight)`` of dt's UTC calendar day as ISO strings."""
    start = datetime.combine(utc_date(dt), datetime.min.time(), tzinfo=timezone.utc)
    return to_iso(start), to_iso(start + timedelta(days=1))
