"""
Business-hours adjustment for speed-to-lead.

Accounts store a list of per-country windows in ``accounts.business_hours``:

    [{"countryCode": "+44", "tz": "Europe/London",
      "startLocal": "09:00", "endLocal": "17:00", "workingDays": [1, 2, 3, 4, 5]}]

A lead is matched to the window whose country code is the longest prefix of
its phone number; no match falls back to the account timezone, 09:00-17:00,
every day. A lead created outside its window is treated as created at the
next opening time.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_START = time(9, 0)
DEFAULT_END = time(17, 0)
ALL_DAYS = frozenset(range(1, 8))   # ISO weekdays, 1 = Monday


@dataclass(frozen=True)
class BusinessWindow:
    tz: str = "UTC"
    start: time = DEFAULT_START
    end: time = DEFAULT_END
    working_days: frozenset[int] = field(default=ALL_DAYS)
    country_code: str = ""


def _parse_time(value: Any, default: time) -> time:
    try:
        return time.fromisoformat(str(value))
    except (TypeError, ValueError):
        return default


def load_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def parse_business_hours(raw: Any) -> list[BusinessWindow]:
    """Windows from the stored JSON (list or JSON string). Malformed entries are skipped."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("business_hours is not valid JSON, ignoring")
            return []
    if not isinstance(raw, list):
        return []

    windows: list[BusinessWindow] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        days = entry.get("workingDays") or entry.get("working_days")
        windows.append(BusinessWindow(
            tz=entry.get("tz") or entry.get("timezone") or "UTC",
            start=_parse_time(entry.get("startLocal") or entry.get("startTime"), DEFAULT_START),
            end=_parse_time(entry.get("endLocal") or entry.get("endTime"), DEFAULT_END),
            working_days=frozenset(int(d) for d in days) if days else ALL_DAYS,
            country_code=str(entry.get("countryCode") or entry.get("country_code") or ""),
        ))
    return windows


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def window_for_phone(
    phone: Optional[str],
    windows: list[BusinessWindow],
    default: BusinessWindow,
) -> BusinessWindow:
    number = _digits(phone or "")
    best: Optional[BusinessWindow] = None
    best_len = 0
    for window in windows:
        code = _digits(window.country_code)
        if code and number.startswith(code) and len(code) > best_len:
            best, best_len = window, len(code)
    return best or default


def shift_to_business_hours(ts: datetime, window: BusinessWindow) -> datetime:
    """Move ``ts`` forward to the next moment the window is open (UTC result)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if not window.working_days or window.start >= window.end:
        return ts.astimezone(timezone.utc)

    zone = load_zone(window.tz)
    local = ts.astimezone(zone)
    day = local.date()
    for _ in range(8):
        if day.isoweekday() in window.working_days:
            opening = datetime.combine(day, window.start, tzinfo=zone)
            closing = datetime.combine(day, window.end, tzinfo=zone)
            if local < closing:
                return max(local, opening).astimezone(timezone.utc)
        day += timedelta(days=1)
        local = datetime.combine(day, time.min, tzinfo=zone)
    return ts.astimezone(timezone.utc)
