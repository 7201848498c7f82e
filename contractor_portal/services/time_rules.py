"""
Time rules for links and deadlines.
Handles UTC normalization, acceptance deadline status and local display.
"""
from datetime import datetime, timedelta
from typing import Optional
import pytz
from ..config import settings


DEADLINE_WARNING = timedelta(hours=48)
DEADLINE_URGENT = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes and convert aware ones to UTC.

    SQLite hands back naive values for DateTime(timezone=True) columns;
    everything stored by this service is UTC, so naive means UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def deadline_status(deadline: Optional[datetime], now: Optional[datetime] = None) -> str:
    """
    Classify an acceptance deadline for display.

    Args:
        deadline: Acceptance deadline (may be None)
        now: Reference instant (defaults to current UTC time)

    Returns:
        'ok' (>48h or no deadline), 'warning' (24-48h), 'urgent' (<24h), 'expired'
    """
    if deadline is None:
        return "ok"
    now = ensure_utc(now) if now is not None else utcnow()
    remaining = ensure_utc(deadline) - now

    if remaining <= timedelta(0):
        return "expired"
    if remaining <= DEADLINE_URGENT:
        return "urgent"
    if remaining <= DEADLINE_WARNING:
        return "warning"
    return "ok"


def is_expiring_soon(expires_at: datetime, now: datetime, window_hours: Optional[int] = None) -> bool:
    """True when the link ceiling is still ahead but inside the warning window."""
    if window_hours is None:
        window_hours = settings.magic_link_expiring_soon_hours
    remaining = ensure_utc(expires_at) - ensure_utc(now)
    return timedelta(0) < remaining < timedelta(hours=window_hours)


def format_local(dt: datetime, timezone_str: Optional[str] = None) -> str:
    """Render a UTC instant in the operator's timezone, e.g. for link emails."""
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return ensure_utc(dt).astimezone(tz).strftime("%Y-%m-%d %H:%M %Z")
