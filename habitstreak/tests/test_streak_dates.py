from datetime import date, datetime, timezone

from habitstreak.core.errors import ErrorKind
from habitstreak.features.streaks.dates import (
    civil_noon,
    date_range,
    ensure_aware,
    parse_civil_date,
    reference_timezone,
    resolve_timezone,
    to_civil_date,
)
from habitstreak.tests.mocks import completion


def test_civil_date_uses_local_calendar_day():
    # 02:00 UTC is still the previous evening in New York
    instant = datetime(2024, 3, 15, 2, 0, tzinfo=timezone.utc)
    assert to_civil_date(instant, "America/New_York") == date(2024, 3, 14)
    assert to_civil_date(instant, "Asia/Tokyo") == date(2024, 3, 15)


def test_unknown_timezone_falls_back_to_utc():
    instant = datetime(2024, 3, 15, 2, 0, tzinfo=timezone.utc)
    assert to_civil_date(instant, "Mars/Olympus_Mons") == date(2024, 3, 15)

    resolved = resolve_timezone("Mars/Olympus_Mons")
    assert not resolved.ok
    assert resolved.error.kind == ErrorKind.INVALID_TIMEZONE


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2024, 3, 15, 23, 30)
    assert ensure_aware(naive).tzinfo == timezone.utc
    assert to_civil_date(naive, "UTC") == date(2024, 3, 15)


def test_civil_noon_is_midday_in_the_zone():
    noon = civil_noon(date(2024, 3, 10), "Asia/Tokyo")
    assert noon == datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)


def test_parse_civil_date_accepts_common_inputs():
    assert parse_civil_date("2024-03-14").value == date(2024, 3, 14)
    assert parse_civil_date(date(2024, 3, 14)).value == date(2024, 3, 14)
    assert parse_civil_date(datetime(2024, 3, 14, 8, 0)).value == date(2024, 3, 14)

    bad = parse_civil_date("14/03/2024")
    assert not bad.ok
    assert bad.error.kind == ErrorKind.INVALID_ARGUMENT


def test_date_range_is_oldest_first():
    days = date_range(date(2024, 3, 15), 3)
    assert days == [date(2024, 3, 13), date(2024, 3, 14), date(2024, 3, 15)]


def test_reference_timezone_follows_latest_active_completion():
    events = [
        completion(datetime(2024, 3, 13, 12, tzinfo=timezone.utc), id="e1", tz="Europe/Berlin"),
        completion(datetime(2024, 3, 14, 12, tzinfo=timezone.utc), id="e2", tz="Asia/Tokyo"),
        completion(datetime(2024, 3, 15, 12, tzinfo=timezone.utc), id="e3", tz="America/Denver", active=False),
    ]
    assert reference_timezone(events) == "Asia/Tokyo"
    assert reference_timezone([], "Europe/Paris") == "Europe/Paris"
    assert reference_timezone([]) == "UTC"
