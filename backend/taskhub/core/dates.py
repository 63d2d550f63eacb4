from __future__ import annotations

from datetime import date, datetime, timezone
from email.utils import format_datetime
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_dt(dt_str: str) -> datetime:
    if dt_str.endswith("Z"):
        dt_str = dt_str.replace("Z", "+00:00")
    dt = datetime.fromisoformat(dt_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc_iso(value) -> Optional[str]:
    """Normalize a datetime or ISO string to a UTC ISO string (None passes through)."""
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_dt(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_due_date(value: str) -> Optional[str]:
    """
    Accepts YYYY-MM-DD or RFC3339. Returns a UTC ISO string, or None if neither parses.
    """
    try:
        d = datetime.strptime(value, "%Y-%m-%d")
        return d.replace(tzinfo=timezone.utc).isoformat()
    except ValueError:
        pass
    try:
        return to_utc_iso(value)
    except ValueError:
        return None


def http_date(dt: datetime) -> str:
    """RFC 7231 date, as expected by If-Modified-Since."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
