"""Shared date/timezone helpers."""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize timezone preference and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except ZoneInfoNotFoundError:
        return None
    return raw


def resolve_timezone(value: Any) -> str:
    normalized = normalize_timezone_name(value)
    if normalized is None:
        if value:
            logger.warning("Unknown timezone preference %r, falling back to UTC", value)
        return DEFAULT_TIMEZONE
    return normalized


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_datetime(ts: datetime, timezone_name: str) -> datetime:
    return as_utc(ts).astimezone(ZoneInfo(timezone_name))


def local_date_for_timezone(ts: datetime, timezone_name: str) -> date:
    """Project a timestamp into the configured local date."""
    return local_datetime(ts, timezone_name).date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_day(day: date) -> date:
    return day + timedelta(days=1)


def parse_iso_date(value: str | date | None, fallback: date) -> date:
    """Parse YYYY-MM-DD; None means fallback. Raises ValueError on malformed input."""
    if value is None or value == "":
        return fallback
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)
