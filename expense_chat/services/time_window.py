"""
Resolve user supplied (ISO or natural-language) date bounds into a concrete
[since, until] calendar range in the caller's timezone.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser

from expense_chat.config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
INFERRED_SPAN = timedelta(days=30)


class TimeWindowError(ValueError):
    pass


class TimeWindowParseError(TimeWindowError):
    pass


class InvalidRangeError(TimeWindowError):
    pass


@dataclass(frozen=True)
class TimeWindow:
    since: date
    until: date
    tz: str

    def as_dict(self) -> Dict[str, str]:
        return {"since": self.since.isoformat(), "until": self.until.isoformat(), "tz": self.tz}


def resolve_timezone(name: Optional[str]) -> str:
    candidate = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        ZoneInfo(candidate)
        return candidate
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone tz=%s fallback=%s", candidate, DEFAULT_TIMEZONE)
        return DEFAULT_TIMEZONE


def _parse_bound(label: str, value: str, tz: str, now: datetime) -> date:
    raw = value.strip()
    if ISO_DATE_RE.match(raw):
        try:
            return date.fromisoformat(raw)
        except ValueError as exc:
            raise TimeWindowParseError(f"Unable to parse '{label}': {value}") from exc
    parsed = dateparser.parse(
        raw,
        settings={
            "TIMEZONE": tz,
            "TO_TIMEZONE": tz,
            "RETURN_AS_TIMEZONE_AWARE": True,
            "RELATIVE_BASE": now.replace(tzinfo=None),
            "PREFER_DATES_FROM": "future",
        },
    )
    if parsed is None:
        raise TimeWindowParseError(f"Unable to parse '{label}': {value}")
    return parsed.date()


def resolve_time_window(
    since: Optional[str] = None,
    until: Optional[str] = None,
    timezone: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TimeWindow:
    """Resolve optional bounds to a closed day range.

    No bounds -> current month up to today. One bound -> the other is
    inferred 30 days away. `since > until` raises InvalidRangeError.
    """
    tz = resolve_timezone(timezone)
    zone = ZoneInfo(tz)
    current = now.astimezone(zone) if now is not None else datetime.now(zone)

    since_raw = (since or "").strip()
    until_raw = (until or "").strip()

    if not since_raw and not until_raw:
        today = current.date()
        return TimeWindow(since=today.replace(day=1), until=today, tz=tz)

    since_day = _parse_bound("since", since_raw, tz, current) if since_raw else None
    until_day = _parse_bound("until", until_raw, tz, current) if until_raw else None

    if since_day is None:
        since_day = until_day - INFERRED_SPAN
    if until_day is None:
        until_day = since_day + INFERRED_SPAN

    if since_day > until_day:
        raise InvalidRangeError(f"Invalid range: since {since_day.isoformat()} is after until {until_day.isoformat()}")
    return TimeWindow(since=since_day, until=until_day, tz=tz)
