"""Civil-date normalization.

A completion counts toward the calendar day on which it happened in the
user's own timezone. Everything downstream works on civil dates only.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habitstreak.core.errors import ErrorKind, Result
from habitstreak.models.streak import CompletionEvent

logger = logging.getLogger("habitstreak.streaks")

UTC_NAME = "UTC"


def ensure_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str]) -> Result[ZoneInfo]:
    if not name or not isinstance(name, str):
        return Result.failure(ErrorKind.INVALID_TIMEZONE, "timezone is required")
    try:
        return Result.success(ZoneInfo(name))
    except (ZoneInfoNotFoundError, ValueError):
        return Result.failure(ErrorKind.INVALID_TIMEZONE, f"unknown timezone: {name}")


def zone_or_utc(name: Optional[str]) -> ZoneInfo:
    """Resolve a timezone, falling back to UTC with a warning."""
    resolved = resolve_timezone(name)
    if resolved.ok:
        return resolved.value
    logger.warning("timezone.fallback", extra={"timezone": name, "fallback": UTC_NAME})
    return ZoneInfo(UTC_NAME)


def to_civil_date(instant: datetime, tz_name: Optional[str]) -> date:
    return ensure_aware(instant).astimezone(zone_or_utc(tz_name)).date()


def today_in(now: datetime, tz_name: Optional[str]) -> date:
    return to_civil_date(now, tz_name)


def civil_noon(day: date, tz_name: Optional[str]) -> datetime:
    """Midday of a civil date, as a UTC instant. Used for synthetic completions."""
    local = datetime.combine(day, time(12, 0), tzinfo=zone_or_utc(tz_name))
    return local.astimezone(timezone.utc)


def parse_civil_date(value) -> Result[date]:
    if isinstance(value, datetime):
        return Result.success(value.date())
    if isinstance(value, date):
        return Result.success(value)
    if isinstance(value, str):
        try:
            return Result.success(date.fromisoformat(value.strip()))
        except ValueError:
            pass
    return Result.failure(ErrorKind.INVALID_ARGUMENT, f"invalid civil date: {value!r}")


def event_date(event: CompletionEvent) -> date:
    return to_civil_date(event.completed_at, event.timezone)


def active_dates(events: Iterable[CompletionEvent]) -> List[date]:
    """Sorted, de-duplicated civil dates of the active completions."""
    return sorted({event_date(e) for e in events if e.active})


def reference_timezone(events: Iterable[CompletionEvent], fallback: Optional[str] = None) -> str:
    """Timezone used for "today": the most recent active completion's, else the fallback."""
    latest = None
    for event in events:
        if not event.active:
            continue
        if latest is None or (event.completed_at, event.created_at) > (latest.completed_at, latest.created_at):
            latest = event
    if latest is not None:
        return latest.timezone
    return fallback or UTC_NAME


def date_range(end: date, days: int) -> List[date]:
    """The `days` civil dates ending at `end`, oldest first."""
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
