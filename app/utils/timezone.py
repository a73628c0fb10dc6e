# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.config import settings


def hospital_tz() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def utcnow() -> datetime:
    """
    Returns a *naive* datetime representing UTC time.
    All DateTime columns are stored naive-UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(d: Optional[datetime]) -> Optional[datetime]:
    """
    - None -> None
    - aware -> converted to UTC, tzinfo dropped
    - naive -> treated as UTC already
    """
    if d is None:
        return None
    if d.tzinfo is None:
        return d
    return d.astimezone(timezone.utc).replace(tzinfo=None)


def hospital_date_key(d: datetime) -> str:
    """YYYYMMDD of `d` in the hospital timezone (naive input is UTC)."""
    if d.tzinfo is None:
        d = d.replace(tzinfo=timezone.utc)
    return d.astimezone(hospital_tz()).strftime("%Y%m%d")
