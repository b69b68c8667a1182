"""
Recurrence Expander

Expands a weekly or monthly recurrence rule into the concrete, ordered list
of occurrences between the first occurrence and the rule's ``until`` bound.
All occurrences are materialized up front; nothing is expanded lazily.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from itertools import count
from typing import Iterator, List, Optional

import pytz
from dateutil.relativedelta import relativedelta

from timeslots.errors import (
    ConstraintViolation,
    InvalidRecurrencePattern,
    InvalidRecurrenceRange,
)
from timeslots.scheduling.timezones import (
    clamp_day,
    is_time_of_day,
    localize,
    parse_datetime,
    resolve_timezone,
    spans_dst,
    weekday_number,
)

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TimePolicy(str, Enum):
    """How occurrences are placed when a DST boundary lies between them."""

    UTC_DURATION = "utc_duration"  # same UTC time of day and absolute length
    LOCAL_TIME = "local_time"  # same local wall-clock start and end


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    until: datetime
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None

    @classmethod
    def build(
        cls,
        frequency: str,
        until: object,
        timezone_name: Optional[str] = None,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
    ) -> "RecurrenceRule":
        """
        Validate raw rule fields and build a rule.

        Raises:
            InvalidRecurrencePattern: Unknown frequency or discriminator out of range
            InvalidFormat: Unparseable ``until``
        """
        try:
            freq = Frequency(frequency)
        except ValueError as e:
            raise InvalidRecurrencePattern(
                f"Unsupported recurrence frequency: {frequency}. Use weekly or monthly",
                details={"frequency": frequency},
            ) from e

        if day_of_week is not None and not (0 <= day_of_week <= 6):
            raise InvalidRecurrencePattern(
                "day_of_week must be between 0 (Sunday) and 6 (Saturday)",
                details={"day_of_week": day_of_week},
            )
        if day_of_month is not None and not (1 <= day_of_month <= 31):
            raise InvalidRecurrencePattern(
                "day_of_month must be between 1 and 31",
                details={"day_of_month": day_of_month},
            )

        tz = resolve_timezone(timezone_name)
        return cls(
            frequency=freq,
            until=parse_until(until, tz),
            day_of_week=day_of_week if freq is Frequency.WEEKLY else None,
            day_of_month=day_of_month if freq is Frequency.MONTHLY else None,
        )

    @property
    def discriminator_missing(self) -> bool:
        if self.frequency is Frequency.WEEKLY:
            return self.day_of_week is None
        return self.day_of_month is None


@dataclass(frozen=True)
class Occurrence:
    start: datetime
    end: datetime
    spans_dst: bool = False


def parse_until(value: object, tz: pytz.BaseTzInfo) -> datetime:
    """
    Resolve the recurrence bound to a UTC instant.

    A bare date covers that whole local day; a date-time is exact.
    """
    if isinstance(value, date) and not isinstance(value, datetime):
        day = value
    elif isinstance(value, str) and len(value.strip()) == 10 and not is_time_of_day(value):
        parsed = parse_datetime(value)
        day = parsed.date()
    else:
        parsed = parse_datetime(value)
        if parsed.tzinfo is None:
            parsed = localize(parsed, tz)
        return parsed.astimezone(timezone.utc)

    next_midnight = localize(datetime.combine(day + timedelta(days=1), time.min), tz)
    return (next_midnight - timedelta(microseconds=1)).astimezone(timezone.utc)


def check_anchor(rule: RecurrenceRule, first_start: datetime, tz: pytz.BaseTzInfo) -> None:
    """
    Make sure the first occurrence agrees with the rule's discriminator.

    Raises:
        InvalidRecurrencePattern: If the first occurrence falls on another
            weekday or day of month than the rule names
    """
    local_day = first_start.astimezone(tz).date()

    if rule.day_of_week is not None and weekday_number(local_day) != rule.day_of_week:
        raise InvalidRecurrencePattern(
            "start_time does not fall on the requested day_of_week",
            details={"day_of_week": rule.day_of_week, "start_day": weekday_number(local_day)},
        )

    if rule.day_of_month is not None:
        expected = clamp_day(local_day.year, local_day.month, rule.day_of_month)
        if local_day.day != expected:
            raise InvalidRecurrencePattern(
                "start_time does not fall on the requested day_of_month",
                details={"day_of_month": rule.day_of_month, "start_day": local_day.day},
            )


def _occurrence_dates(anchor: date, rule: RecurrenceRule) -> Iterator[date]:
    # Months are always counted from the anchor so that a clamped short month
    # does not pull later occurrences off their day (Jan 31 -> Feb 28 -> Mar 31).
    day = rule.day_of_month or anchor.day
    for n in count():
        if rule.frequency is Frequency.WEEKLY:
            yield anchor + timedelta(weeks=n)
        else:
            yield anchor + relativedelta(months=n, day=day)


def expand(
    first_start: datetime,
    first_end: datetime,
    rule: RecurrenceRule,
    timezone_name: Optional[str] = None,
    *,
    policy: TimePolicy = TimePolicy.UTC_DURATION,
    max_occurrences: Optional[int] = None,
) -> List[Occurrence]:
    """
    Produce every occurrence from the first through the last one starting
    at or before ``rule.until``.

    Calendar stepping happens on the local calendar of the zone. With
    ``UTC_DURATION`` each occurrence starts a whole number of 24-hour days
    after the first and lasts exactly ``first_end - first_start``; with
    ``LOCAL_TIME`` each occurrence keeps the first one's local start and end
    wall-clock times.

    Args:
        first_start: First occurrence start (aware)
        first_end: First occurrence end (aware)
        rule: Validated recurrence rule
        timezone_name: IANA zone the rule is expressed in
        policy: Occurrence placement policy across DST changes
        max_occurrences: Upper bound on the number of occurrences

    Returns:
        Ordered list of occurrences

    Raises:
        InvalidRecurrenceRange: If ``until`` precedes the first start or the
            rule would produce more than ``max_occurrences``
    """
    tz = resolve_timezone(timezone_name)
    policy = TimePolicy(policy)

    if first_end <= first_start:
        raise ConstraintViolation(
            "end_time must be after start_time",
            details={"start_time": first_start.isoformat(), "end_time": first_end.isoformat()},
        )

    if first_start >= rule.until:
        raise InvalidRecurrenceRange(
            "Recurrence end date must be after the first occurrence",
            details={"start_time": first_start.isoformat(), "until": rule.until.isoformat()},
        )

    first_start = first_start.astimezone(timezone.utc)
    first_end = first_end.astimezone(timezone.utc)
    duration = first_end - first_start
    local_start = first_start.astimezone(tz)
    local_end = first_end.astimezone(tz)
    anchor = local_start.date()
    end_day_offset = local_end.date() - anchor

    occurrences: List[Occurrence] = []
    for day in _occurrence_dates(anchor, rule):
        if policy is TimePolicy.UTC_DURATION:
            start = first_start + (day - anchor)
            end = start + duration
        else:
            start = localize(
                datetime.combine(day, local_start.time()), tz
            ).astimezone(timezone.utc)
            end = localize(
                datetime.combine(day + end_day_offset, local_end.time()), tz
            ).astimezone(timezone.utc)

        if start > rule.until:
            break

        if max_occurrences is not None and len(occurrences) >= max_occurrences:
            raise InvalidRecurrenceRange(
                f"Recurrence would create more than {max_occurrences} slots",
                details={"max_occurrences": max_occurrences},
            )

        occurrences.append(
            Occurrence(
                start=start.astimezone(timezone.utc),
                end=end.astimezone(timezone.utc),
                spans_dst=spans_dst(start, end, tz),
            )
        )

    logger.debug(f"Expanded {rule.frequency.value} rule into {len(occurrences)} occurrences")
    return occurrences
