"""
Time Slot Service

Creation, reservation, deletion and listing of consultant time slots.
Every mutating operation runs in one store transaction so that the overlap
check and the write it guards commit or roll back together.
"""

import logging
import math
import re
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from timeslots.config import Settings
from timeslots.db.repository import (
    ConsultantRepository,
    CustomerRepository,
    RecurrencePatternRepository,
    TimeSlotRepository,
)
from timeslots.db.session import SlotStore
from timeslots.errors import (
    ConstraintViolation,
    ConsultantNotFound,
    CustomerNotFound,
    InvalidFormat,
    InvalidIdentifier,
    InvalidRecurrencePattern,
    InvalidRecurrenceRange,
    SlotBooked,
    SlotNotFound,
    SlotUnavailable,
)
from timeslots.models.schemas import (
    DeletionSummary,
    Pagination,
    RecurrencePatternResponse,
    SlotCreationResult,
    SlotQuery,
    SlotWarning,
    TimeSlotCreate,
    TimeSlotPage,
    TimeSlotResponse,
)
from timeslots.scheduling.overlap import ensure_no_overlap
from timeslots.scheduling.recurrence import (
    Frequency,
    Occurrence,
    RecurrenceRule,
    check_anchor,
    expand,
)
from timeslots.scheduling.timezones import (
    DST_WARNING,
    ensure_utc,
    is_time_of_day,
    local_date_to_utc,
    normalize_interval,
    resolve_timezone,
    utcnow,
)

logger = logging.getLogger(__name__)

MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def parse_identifier(value: Optional[str], field: str) -> str:
    """
    Validate and canonicalise a UUID identifier.

    Raises:
        InvalidIdentifier: If the value is not a UUID
    """
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidIdentifier(
            f"Invalid {field} format", details={field: value}
        ) from e


def _parse_date(value: str, field: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (ValueError, TypeError) as e:
        raise InvalidFormat(
            f"Invalid {field} format. Use YYYY-MM-DD", details={field: value}
        ) from e


def _parse_month(value: str) -> Tuple[date, date]:
    match = MONTH_PATTERN.match(value or "")
    if not match:
        raise InvalidFormat("Invalid month format. Use YYYY-MM", details={"month": value})
    year, month = int(match.group(1)), int(match.group(2))
    first = date(year, month, 1)
    following = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return first, following


class SlotService:
    """
    Scheduling operations over an injected SlotStore.

    Dependencies are explicit: the store handle, the settings, and a clock
    returning the current UTC instant.
    """

    def __init__(
        self,
        store: SlotStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    # Creation

    async def create_time_slots(self, request: TimeSlotCreate) -> SlotCreationResult:
        """
        Create one slot, or a whole recurring series, from a request.

        The request times are normalized to UTC in the request zone; a
        recurring request is expanded into all its occurrences and persisted
        as one all-or-nothing batch together with its pattern.

        Args:
            request: Consultant, start/end, optional zone and recurrence rule

        Returns:
            Created slots, the pattern (recurring only) and DST warnings

        Raises:
            InvalidIdentifier, InvalidFormat, InvalidTimezone,
            InvalidRecurrencePattern, InvalidRecurrenceRange,
            ConstraintViolation, ConsultantNotFound, SlotOverlap, LockTimeout
        """
        consultant_id = parse_identifier(request.consultant_id, "consultant_id")
        timezone_name = request.timezone or self.settings.default_timezone
        tz = resolve_timezone(timezone_name)

        rule: Optional[RecurrenceRule] = None
        if request.recurring is not None:
            rule = RecurrenceRule.build(
                request.recurring.frequency,
                request.recurring.until,
                timezone_name,
                day_of_week=request.recurring.day_of_week,
                day_of_month=request.recurring.day_of_month,
            )
            if is_time_of_day(request.start_time) and rule.discriminator_missing:
                missing = "day_of_week" if rule.frequency is Frequency.WEEKLY else "day_of_month"
                raise InvalidRecurrencePattern(
                    f"{rule.frequency.value.capitalize()} recurring slots given as HH:MM "
                    f"must specify {missing}",
                    details={"frequency": rule.frequency.value, "missing": missing},
                )

        interval = normalize_interval(
            request.start_time,
            request.end_time,
            timezone_name,
            now=self.clock(),
            day_of_week=rule.day_of_week if rule else None,
            day_of_month=rule.day_of_month if rule else None,
        )

        if rule is None:
            slot = await self.create_slot(consultant_id, interval.start, interval.end)
            warnings = [
                SlotWarning(message=message, start_time=interval.start, end_time=interval.end)
                for message in interval.warnings
            ]
            return SlotCreationResult(time_slots=[slot], warnings=warnings)

        check_anchor(rule, interval.start, tz)
        occurrences = expand(
            interval.start,
            interval.end,
            rule,
            timezone_name,
            policy=self.settings.recurrence_time_policy,
            max_occurrences=self.settings.max_occurrences,
        )
        slots, pattern = await self.create_recurring_slots(
            consultant_id, occurrences, rule, timezone_name
        )
        warnings = [
            SlotWarning(message=DST_WARNING, start_time=occ.start, end_time=occ.end)
            for occ in occurrences
            if occ.spans_dst
        ]
        return SlotCreationResult(
            time_slots=slots, recurrence_pattern=pattern, warnings=warnings
        )

    async def create_slot(
        self,
        consultant_id: str,
        start: datetime,
        end: datetime,
    ) -> TimeSlotResponse:
        """
        Persist one slot after checking it against the consultant's schedule.

        Naive datetimes are read as UTC.

        Raises:
            ConstraintViolation: Bad duration or start in the past
            ConsultantNotFound: Unknown consultant
            SlotOverlap: The interval intersects an existing slot
        """
        consultant_id = parse_identifier(consultant_id, "consultant_id")
        start, end = ensure_utc(start), ensure_utc(end)
        self._check_interval(start, end)
        self._check_not_past(start)

        async with self.store.transaction() as session:
            await self._lock_schedule(session, consultant_id)
            slots = TimeSlotRepository(session)
            await ensure_no_overlap(
                slots,
                consultant_id,
                [(start, end)],
                include_booked=self.settings.overlap_includes_booked,
            )
            created = await slots.insert_slots(consultant_id, [(start, end)])

        logger.info(f"Created slot {created[0]['id']} for consultant {consultant_id}")
        return TimeSlotResponse(**created[0])

    async def create_recurring_slots(
        self,
        consultant_id: str,
        occurrences: Sequence[Occurrence],
        rule: RecurrenceRule,
        timezone_name: Optional[str] = None,
    ) -> Tuple[List[TimeSlotResponse], RecurrencePatternResponse]:
        """
        Persist a pattern and all of its occurrences as one unit.

        Either every occurrence is created or none is.

        Raises:
            InvalidRecurrenceRange: No occurrences
            ConstraintViolation: An occurrence has a bad duration, or the
                series starts in the past
            ConsultantNotFound: Unknown consultant
            SlotOverlap: Any occurrence intersects the schedule or another
                occurrence
        """
        consultant_id = parse_identifier(consultant_id, "consultant_id")
        if not occurrences:
            raise InvalidRecurrenceRange("Recurrence produces no occurrences")

        intervals = [(ensure_utc(occ.start), ensure_utc(occ.end)) for occ in occurrences]
        for start, end in intervals:
            self._check_interval(start, end)
        self._check_not_past(min(start for start, _ in intervals))

        async with self.store.transaction() as session:
            await self._lock_schedule(session, consultant_id)
            slots = TimeSlotRepository(session)
            await ensure_no_overlap(
                slots,
                consultant_id,
                intervals,
                include_booked=self.settings.overlap_includes_booked,
            )
            pattern = await RecurrencePatternRepository(session).create_pattern(
                frequency=rule.frequency.value,
                until=rule.until,
                timezone=resolve_timezone(timezone_name).zone,
                day_of_week=rule.day_of_week,
                day_of_month=rule.day_of_month,
            )
            created = await slots.insert_slots(consultant_id, intervals, pattern["id"])

        logger.info(
            f"Created {len(created)} recurring slots for consultant {consultant_id} "
            f"(pattern {pattern['id']})"
        )
        return (
            [TimeSlotResponse(**slot) for slot in created],
            RecurrencePatternResponse(**pattern),
        )

    # Reservation

    async def reserve_slot(self, slot_id: str, customer_id: str) -> TimeSlotResponse:
        """
        Book an unbooked slot for a customer.

        The booking is a conditional update on the slot row, so of any number
        of concurrent callers exactly one succeeds.

        Raises:
            InvalidIdentifier: Malformed slot or customer id
            CustomerNotFound: Unknown customer
            SlotNotFound: Unknown slot
            SlotUnavailable: The slot is already booked
        """
        slot_id = parse_identifier(slot_id, "slot_id")
        customer_id = parse_identifier(customer_id, "customer_id")

        async with self.store.transaction() as session:
            customer = await CustomerRepository(session).get_customer_by_id(customer_id)
            if customer is None:
                raise CustomerNotFound("Customer not found", details={"customer_id": customer_id})

            slots = TimeSlotRepository(session)
            if not await slots.reserve(slot_id, customer_id, self.clock()):
                current = await slots.get_slot_by_id(slot_id)
                if current is None:
                    raise SlotNotFound("Time slot not found", details={"slot_id": slot_id})
                logger.warning(f"Reservation of slot {slot_id} by {customer_id} rejected: already booked")
                raise SlotUnavailable("Time slot is not available", details={"slot_id": slot_id})

            updated = await slots.get_slot_by_id(slot_id)

        logger.info(f"Slot {slot_id} reserved by customer {customer_id}")
        return TimeSlotResponse(**updated)

    # Deletion

    async def delete_slot(self, slot_id: str) -> DeletionSummary:
        """
        Delete an unbooked slot.

        For a slot generated from a recurrence pattern, every other unbooked
        occurrence of that pattern starting now or later is deleted too;
        booked occurrences stay. The pattern record goes once nothing refers
        to it.

        Raises:
            InvalidIdentifier: Malformed slot id
            SlotNotFound: Unknown slot
            SlotBooked: The targeted slot is booked
        """
        slot_id = parse_identifier(slot_id, "slot_id")

        async with self.store.transaction() as session:
            slots = TimeSlotRepository(session)
            slot = await slots.get_slot_by_id(slot_id)
            if slot is None:
                raise SlotNotFound("Time slot not found", details={"slot_id": slot_id})
            if slot["is_booked"]:
                raise SlotBooked("Cannot delete booked time slots", details={"slot_id": slot_id})

            if not await slots.delete_unbooked(slot_id):
                # Booked or removed by a concurrent transaction since the read.
                if await slots.get_slot_by_id(slot_id) is None:
                    raise SlotNotFound("Time slot not found", details={"slot_id": slot_id})
                raise SlotBooked("Cannot delete booked time slots", details={"slot_id": slot_id})

            deleted_ids = [slot_id]
            pattern_id = slot["recurrence_pattern_id"]
            pattern_deleted = False
            retained = 0

            if pattern_id:
                deleted_ids.extend(
                    await slots.delete_future_unbooked_in_pattern(pattern_id, self.clock())
                )
                retained = await slots.count_booked_in_pattern(pattern_id)
                pattern_deleted = await RecurrencePatternRepository(session).delete_if_orphaned(
                    pattern_id
                )

        if pattern_id:
            logger.info(
                f"Deleted {len(deleted_ids)} slot(s) of pattern {pattern_id}, "
                f"{retained} booked occurrence(s) kept"
            )
        else:
            logger.info(f"Deleted slot {slot_id}")
        return DeletionSummary(
            deleted_slot_ids=deleted_ids,
            deleted_count=len(deleted_ids),
            recurrence_pattern_id=pattern_id,
            pattern_deleted=pattern_deleted,
            retained_booked_count=retained,
        )

    # Reads

    async def get_slot(self, slot_id: str) -> Optional[TimeSlotResponse]:
        slot_id = parse_identifier(slot_id, "slot_id")
        async with self.store.session() as session:
            slot = await TimeSlotRepository(session).get_slot_by_id(slot_id)
        return TimeSlotResponse(**slot) if slot else None

    async def list_slots(self, query: SlotQuery) -> TimeSlotPage:
        """
        List slots matching the filters, ordered by start time.

        Date filters are calendar dates in ``query.timezone`` (UTC by
        default). Booked slots are left out unless ``include_booked`` is set.
        The page size is capped at ``max_page_size`` whatever the caller asks.

        Raises:
            InvalidFormat: Bad date, month, page or limit
            InvalidIdentifier: Malformed consultant id
            InvalidTimezone: Unknown zone
        """
        if query.page < 1:
            raise InvalidFormat(
                "Invalid page number. Must be a positive integer", details={"page": query.page}
            )
        limit = query.limit if query.limit is not None else self.settings.default_page_size
        if limit < 1:
            raise InvalidFormat("Limit must be a positive integer", details={"limit": limit})
        limit = min(limit, self.settings.max_page_size)

        consultant_id = (
            parse_identifier(query.consultant_id, "consultant_id") if query.consultant_id else None
        )
        start_from, start_before = self._date_bounds(query)

        async with self.store.session() as session:
            rows, total = await TimeSlotRepository(session).list_slots(
                consultant_id=consultant_id,
                start_from=start_from,
                start_before=start_before,
                include_booked=query.include_booked,
                limit=limit,
                offset=(query.page - 1) * limit,
            )

        return TimeSlotPage(
            time_slots=[TimeSlotResponse(**row) for row in rows],
            pagination=Pagination(
                current_page=query.page,
                total_pages=math.ceil(total / limit),
                total_items=total,
                limit=limit,
            ),
        )

    # Helpers

    async def _lock_schedule(self, session, consultant_id: str) -> None:
        if not await ConsultantRepository(session).lock_schedule(consultant_id):
            raise ConsultantNotFound(
                "Consultant not found", details={"consultant_id": consultant_id}
            )

    def _check_interval(self, start: datetime, end: datetime) -> None:
        if end <= start:
            raise ConstraintViolation(
                "end_time must be after start_time",
                details={"start_time": start.isoformat(), "end_time": end.isoformat()},
            )

        minutes = (end - start) / timedelta(minutes=1)
        if minutes < self.settings.min_slot_minutes or minutes > self.settings.max_slot_minutes:
            raise ConstraintViolation(
                f"Slot duration must be between {self.settings.min_slot_minutes} "
                f"and {self.settings.max_slot_minutes} minutes",
                details={"duration_minutes": minutes},
            )

    def _check_not_past(self, start: datetime) -> None:
        if not self.settings.allow_past_slots and start < self.clock():
            raise ConstraintViolation(
                "Cannot create time slots in the past",
                details={"start_time": start.isoformat()},
            )

    def _date_bounds(self, query: SlotQuery) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Intersect the date, month and range filters into one UTC window."""
        tz = resolve_timezone(query.timezone)
        lowers: List[date] = []
        uppers: List[date] = []

        if query.date:
            day = _parse_date(query.date, "date")
            lowers.append(day)
            uppers.append(day + timedelta(days=1))

        if query.month:
            first, following = _parse_month(query.month)
            lowers.append(first)
            uppers.append(following)

        start_date = _parse_date(query.start_date, "start_date") if query.start_date else None
        end_date = _parse_date(query.end_date, "end_date") if query.end_date else None
        if start_date and end_date and end_date < start_date:
            raise InvalidFormat(
                "End date must be after start date",
                details={"start_date": query.start_date, "end_date": query.end_date},
            )
        if start_date:
            lowers.append(start_date)
        if end_date:
            uppers.append(end_date + timedelta(days=1))

        start_from = local_date_to_utc(max(lowers), tz) if lowers else None
        start_before = local_date_to_utc(min(uppers), tz) if uppers else None
        return start_from, start_before
