"""
Time Normalizer

Converts request times (ISO-8601 date-times, dates, or bare ``HH:MM``
times-of-day) plus an optional IANA zone into timezone-aware UTC instants,
and flags intervals whose ends fall on different sides of a DST transition.
"""

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Union

import pytz
from dateutil.parser import isoparse

from timeslots.errors import InvalidFormat, InvalidTimezone

logger = logging.getLogger(__name__)

TIME_OF_DAY_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

DST_WARNING = "Time slot spans DST transition"

TimeInput = Union[str, datetime]


@dataclass(frozen=True)
class NormalizedInterval:
    start: datetime
    end: datetime
    timezone: str
    warnings: List[str] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str]) -> pytz.BaseTzInfo:
    """
    Look up an IANA zone, defaulting to UTC.

    Raises:
        InvalidTimezone: If the identifier is not in the zone database
    """
    if not name:
        return pytz.utc
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError as e:
        raise InvalidTimezone(
            f"Unknown timezone: {name}", details={"timezone": name}
        ) from e


def is_time_of_day(value: TimeInput) -> bool:
    return isinstance(value, str) and TIME_OF_DAY_PATTERN.match(value.strip()) is not None


def parse_time_of_day(value: str) -> time:
    match = TIME_OF_DAY_PATTERN.match(value.strip())
    if not match:
        raise InvalidFormat(
            f"Invalid time of day: {value}. Use HH:MM", details={"value": value}
        )
    return time(int(match.group(1)), int(match.group(2)))


def parse_datetime(value: TimeInput) -> datetime:
    """
    Parse an ISO-8601 date-time or date.

    The result is aware when the input carries an offset, naive otherwise.

    Raises:
        InvalidFormat: If the value is not a recognised date-time
    """
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidFormat(
            "Time must be an ISO 8601 date-time or HH:MM", details={"value": value}
        )
    try:
        return isoparse(value.strip())
    except (ValueError, OverflowError) as e:
        raise InvalidFormat(
            f"Invalid date-time format: {value}", details={"value": value}
        ) from e


def localize(naive: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """
    Attach a zone to a naive local time deterministically.

    Times inside a spring-forward gap move forward by the gap; ambiguous
    fall-back times resolve to the first (daylight) reading.
    """
    try:
        return tz.localize(naive, is_dst=None)
    except pytz.exceptions.NonExistentTimeError:
        return tz.normalize(tz.localize(naive, is_dst=False))
    except pytz.exceptions.AmbiguousTimeError:
        return tz.localize(naive, is_dst=True)


def to_utc(value: TimeInput, tz: pytz.BaseTzInfo) -> datetime:
    """
    Convert a full date-time to a UTC instant.

    An explicit offset in the value wins over ``tz``; naive values are read
    as local time in ``tz``.
    """
    parsed = parse_datetime(value)
    if parsed.tzinfo is None:
        parsed = localize(parsed, tz)
    return parsed.astimezone(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date_to_utc(day: date, tz: pytz.BaseTzInfo, at: time = time.min) -> datetime:
    return localize(datetime.combine(day, at), tz).astimezone(timezone.utc)


def spans_dst(start: datetime, end: datetime, tz: pytz.BaseTzInfo) -> bool:
    """True when the zone's DST flag differs between the two instants."""
    return start.astimezone(tz).dst() != end.astimezone(tz).dst()


def weekday_number(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def clamp_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def next_qualifying_date(
    time_of_day: time,
    tz: pytz.BaseTzInfo,
    now: datetime,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> date:
    """
    First local date, from today on, whose ``time_of_day`` is still ahead.

    With ``day_of_week`` the date must fall on that weekday; with
    ``day_of_month`` on that day of the month (clamped to the month's end).
    """
    candidate = now.astimezone(tz).date()
    # A year and a bit always contains a qualifying date.
    for _ in range(400):
        if day_of_week is not None:
            qualifies = weekday_number(candidate) == day_of_week
        elif day_of_month is not None:
            qualifies = candidate.day == clamp_day(candidate.year, candidate.month, day_of_month)
        else:
            qualifies = True

        if qualifies and local_date_to_utc(candidate, tz, time_of_day) > now:
            return candidate
        candidate += timedelta(days=1)

    raise InvalidFormat(
        "Could not resolve time of day to a calendar date",
        details={"time": time_of_day.isoformat()},
    )


def normalize_interval(
    start_value: TimeInput,
    end_value: TimeInput,
    timezone_name: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> NormalizedInterval:
    """
    Resolve a start/end pair to UTC.

    Both values must be full date-times, or both bare ``HH:MM`` times. Bare
    times land on the next qualifying local date (see
    ``next_qualifying_date``); a bare end that is not after the start moves to
    the following day.

    Args:
        start_value: Start as ISO-8601 string, datetime, or HH:MM
        end_value: End in the same form as the start
        timezone_name: IANA zone for naive values (UTC when absent)
        now: Reference instant for resolving bare times
        day_of_week: Weekday constraint for bare times (0 = Sunday)
        day_of_month: Day-of-month constraint for bare times

    Returns:
        NormalizedInterval with UTC instants and any DST warning

    Raises:
        InvalidFormat: If either value is malformed, or the forms are mixed
        InvalidTimezone: If the zone is unknown
    """
    tz = resolve_timezone(timezone_name)
    start_is_bare = is_time_of_day(start_value)
    end_is_bare = is_time_of_day(end_value)

    if start_is_bare != end_is_bare:
        raise InvalidFormat(
            "start_time and end_time must both be date-times or both be HH:MM",
            details={"start_time": str(start_value), "end_time": str(end_value)},
        )

    if start_is_bare:
        start_tod = parse_time_of_day(start_value)
        end_tod = parse_time_of_day(end_value)
        day = next_qualifying_date(
            start_tod,
            tz,
            now or utcnow(),
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        )
        end_day = day if end_tod > start_tod else day + timedelta(days=1)
        start = local_date_to_utc(day, tz, start_tod)
        end = local_date_to_utc(end_day, tz, end_tod)
    else:
        start = to_utc(start_value, tz)
        end = to_utc(end_value, tz)

    warnings = []
    if spans_dst(start, end, tz):
        logger.warning(
            f"Interval {start.isoformat()} - {end.isoformat()} spans a DST transition in {tz.zone}"
        )
        warnings.append(DST_WARNING)

    return NormalizedInterval(start=start, end=end, timezone=tz.zone, warnings=warnings)
