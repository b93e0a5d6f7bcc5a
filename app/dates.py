from __future__ import annotations

import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from zoneinfo import ZoneInfo

LOCAL_TZ_NAME = os.getenv("REFTRACK_TIMEZONE", "America/Los_Angeles").strip() or "America/Los_Angeles"


def local_tz() -> ZoneInfo:
    return ZoneInfo(LOCAL_TZ_NAME)


def now_local() -> datetime:
    return datetime.now(local_tz())


def today_local() -> date:
    return now_local().date()


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO date or datetime string into an aware datetime.
    Naive values (including form "YYYY-MM-DDTHH:MM" input) are read as local time.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=local_tz())
    return dt


def parse_local_date(value: Any) -> Optional[date]:
    """Calendar day of a date/datetime value. Date-only strings are taken as-is."""
    if isinstance(value, str):
        raw = value.strip()
        if len(raw) == 10:
            try:
                return date.fromisoformat(raw)
            except ValueError:
                return None
    elif isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = parse_datetime(value)
    if dt is None:
        return None
    return dt.astimezone(local_tz()).date()


def to_iso_date(value: Any) -> Optional[str]:
    d = parse_local_date(value)
    return d.isoformat() if d else None


def to_iso_datetime(value: Any) -> Optional[str]:
    dt = parse_datetime(value)
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def start_of_week(d: date) -> date:
    # Monday-start weeks
    return d - timedelta(days=d.weekday())


def local_midnight_utc(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=local_tz()).astimezone(timezone.utc)
