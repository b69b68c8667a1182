"""
Tests for SlotService against a real SQLite database.

Covers creation (single and recurring), overlap rejection, reservation
including the concurrent case, deletion of single and recurring slots, and
listing with filters and pagination.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from timeslots.db.repository import RecurrencePatternRepository
from timeslots.errors import (
    ConstraintViolation,
    ConsultantNotFound,
    CustomerNotFound,
    InvalidFormat,
    InvalidIdentifier,
    InvalidRecurrencePattern,
    InvalidTimezone,
    SlotBooked,
    SlotNotFound,
    SlotOverlap,
    SlotUnavailable,
)
from timeslots.models.schemas import (
    RecurrenceRuleIn,
    SlotQuery,
    TimeSlotCreate,
    TimeSlotResponse,
)
from timeslots.scheduling.timezones import DST_WARNING
from timeslots.services.slots import SlotService

NEW_YORK = "America/New_York"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestCreateSlot:
    async def test_created_slot_reads_back_unchanged(self, service, consultant):
        created = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        fetched = await service.get_slot(created.id)

        assert fetched is not None
        assert fetched.start_time == utc(2025, 3, 10, 10)
        assert fetched.end_time == utc(2025, 3, 10, 11)
        assert fetched.is_booked is False
        assert fetched.customer_id is None
        assert fetched.recurrence_pattern_id is None

    async def test_naive_datetimes_are_read_as_utc(self, service, consultant):
        created = await service.create_slot(
            consultant["id"], datetime(2025, 3, 10, 10), datetime(2025, 3, 10, 11)
        )

        assert created.start_time == utc(2025, 3, 10, 10)
        assert (await service.get_slot(created.id)).end_time == utc(2025, 3, 10, 11)
        with pytest.raises(SlotOverlap):
            await service.create_slot(
                consultant["id"], utc(2025, 3, 10, 10, 30), utc(2025, 3, 10, 11, 30)
            )

    async def test_naive_datetime_in_the_past_is_rejected(self, service, consultant):
        with pytest.raises(ConstraintViolation):
            await service.create_slot(
                consultant["id"], datetime(2025, 2, 10, 10), datetime(2025, 2, 10, 11)
            )

    async def test_touching_slots_are_accepted(self, service, consultant):
        await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.create_slot(consultant["id"], utc(2025, 3, 10, 11), utc(2025, 3, 10, 12))
        await service.create_slot(consultant["id"], utc(2025, 3, 10, 9), utc(2025, 3, 10, 10))

    async def test_overlapping_slot_is_rejected(self, service, consultant):
        existing = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        with pytest.raises(SlotOverlap) as exc_info:
            await service.create_slot(
                consultant["id"], utc(2025, 3, 10, 10, 30), utc(2025, 3, 10, 11, 30)
            )

        assert exc_info.value.details["conflicting_slot_ids"] == [existing.id]

    async def test_same_interval_for_other_consultant_is_accepted(
        self, service, consultant, other_consultant
    ):
        await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.create_slot(other_consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

    async def test_booked_slot_does_not_block_by_default(self, service, consultant, customer):
        booked = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.reserve_slot(booked.id, customer["id"])

        await service.create_slot(consultant["id"], utc(2025, 3, 10, 10, 30), utc(2025, 3, 10, 11, 30))

    async def test_booked_slot_blocks_when_configured(
        self, store, settings, clock, consultant, customer
    ):
        service = SlotService(
            store, settings.model_copy(update={"overlap_includes_booked": True}), clock=clock
        )
        booked = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.reserve_slot(booked.id, customer["id"])

        with pytest.raises(SlotOverlap):
            await service.create_slot(
                consultant["id"], utc(2025, 3, 10, 10, 30), utc(2025, 3, 10, 11, 30)
            )

    async def test_unknown_consultant(self, service):
        with pytest.raises(ConsultantNotFound):
            await service.create_slot(str(uuid.uuid4()), utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

    async def test_malformed_consultant_id(self, service):
        with pytest.raises(InvalidIdentifier):
            await service.create_slot("consultant-1", utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

    @pytest.mark.parametrize(
        "start, end",
        [
            (utc(2025, 3, 10, 11), utc(2025, 3, 10, 10)),
            (utc(2025, 3, 10, 10), utc(2025, 3, 10, 10)),
            (utc(2025, 3, 10, 10), utc(2025, 3, 10, 10, 10)),
            (utc(2025, 3, 10, 8), utc(2025, 3, 10, 17)),
            (utc(2025, 2, 10, 10), utc(2025, 2, 10, 11)),
        ],
        ids=["reversed", "empty", "too-short", "too-long", "in-the-past"],
    )
    async def test_constraint_violations(self, service, consultant, start, end):
        with pytest.raises(ConstraintViolation):
            await service.create_slot(consultant["id"], start, end)

    async def test_concurrent_overlapping_creates_admit_one(self, service, consultant):
        results = await asyncio.gather(
            service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11)),
            service.create_slot(consultant["id"], utc(2025, 3, 10, 10, 30), utc(2025, 3, 10, 11, 30)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, TimeSlotResponse)]
        rejected = [r for r in results if isinstance(r, SlotOverlap)]
        assert len(created) == 1
        assert len(rejected) == 1


class TestCreateTimeSlots:
    async def test_single_request_with_zone(self, service, consultant):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="2025-03-10T09:00:00",
                end_time="2025-03-10T10:00:00",
                timezone=NEW_YORK,
            )
        )

        assert len(result.time_slots) == 1
        assert result.time_slots[0].start_time == utc(2025, 3, 10, 13)
        assert result.recurrence_pattern is None
        assert result.warnings == []

    async def test_single_request_across_dst_warns(self, service, consultant):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="2025-03-09T01:00:00",
                end_time="2025-03-09T04:00:00",
                timezone=NEW_YORK,
            )
        )

        assert [w.message for w in result.warnings] == [DST_WARNING]

    async def test_weekly_series_across_dst(self, service, consultant):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="2025-03-09T01:00:00",
                end_time="2025-03-09T04:00:00",
                timezone=NEW_YORK,
                recurring=RecurrenceRuleIn(frequency="weekly", until="2025-03-23"),
            )
        )

        assert [slot.start_time for slot in result.time_slots] == [
            utc(2025, 3, 9, 6),
            utc(2025, 3, 16, 6),
            utc(2025, 3, 23, 6),
        ]
        assert all(s.end_time - s.start_time == timedelta(hours=2) for s in result.time_slots)

        pattern = result.recurrence_pattern
        assert pattern.frequency == "weekly"
        assert pattern.timezone == NEW_YORK
        assert {slot.recurrence_pattern_id for slot in result.time_slots} == {pattern.id}

        assert len(result.warnings) == 1
        assert result.warnings[0].message == DST_WARNING
        assert result.warnings[0].start_time == utc(2025, 3, 9, 6)

    async def test_weekly_series_from_time_of_day(self, service, consultant):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="09:00",
                end_time="10:00",
                recurring=RecurrenceRuleIn(frequency="weekly", until="2025-03-31", day_of_week=1),
            )
        )

        # Mondays from 3 March
        assert [slot.start_time.day for slot in result.time_slots] == [3, 10, 17, 24, 31]
        assert result.recurrence_pattern.day_of_week == 1

    async def test_time_of_day_without_weekday_is_rejected(self, service, consultant):
        with pytest.raises(InvalidRecurrencePattern) as exc_info:
            await service.create_time_slots(
                TimeSlotCreate(
                    consultant_id=consultant["id"],
                    start_time="09:00",
                    end_time="10:00",
                    recurring=RecurrenceRuleIn(frequency="weekly", until="2025-03-31"),
                )
            )

        assert exc_info.value.details["missing"] == "day_of_week"

    async def test_unknown_zone(self, service, consultant):
        with pytest.raises(InvalidTimezone):
            await service.create_time_slots(
                TimeSlotCreate(
                    consultant_id=consultant["id"],
                    start_time="2025-03-10T09:00:00",
                    end_time="2025-03-10T10:00:00",
                    timezone="Europe/Atlantis",
                )
            )

    async def test_series_is_all_or_nothing(self, service, consultant):
        blocker = await service.create_slot(consultant["id"], utc(2025, 3, 16, 6, 30), utc(2025, 3, 16, 7))

        with pytest.raises(SlotOverlap):
            await service.create_time_slots(
                TimeSlotCreate(
                    consultant_id=consultant["id"],
                    start_time="2025-03-09T06:00:00Z",
                    end_time="2025-03-09T08:00:00Z",
                    recurring=RecurrenceRuleIn(frequency="weekly", until="2025-03-23"),
                )
            )

        page = await service.list_slots(SlotQuery(consultant_id=consultant["id"]))
        assert [slot.id for slot in page.time_slots] == [blocker.id]


class TestReserveSlot:
    async def test_reserve_books_for_customer(self, service, consultant, customer):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        reserved = await service.reserve_slot(slot.id, customer["id"])

        assert reserved.is_booked is True
        assert reserved.customer_id == customer["id"]
        assert (await service.get_slot(slot.id)).customer_id == customer["id"]

    async def test_second_reservation_is_rejected(self, service, consultant, customers):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.reserve_slot(slot.id, customers[0]["id"])

        with pytest.raises(SlotUnavailable) as exc_info:
            await service.reserve_slot(slot.id, customers[1]["id"])

        assert exc_info.value.retryable is True
        assert (await service.get_slot(slot.id)).customer_id == customers[0]["id"]

    async def test_concurrent_reservations_have_one_winner(self, service, consultant, customers):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        results = await asyncio.gather(
            *(service.reserve_slot(slot.id, c["id"]) for c in customers),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, TimeSlotResponse)]
        losers = [r for r in results if isinstance(r, SlotUnavailable)]
        assert len(winners) == 1
        assert len(losers) == len(customers) - 1

        stored = await service.get_slot(slot.id)
        assert stored.is_booked is True
        assert stored.customer_id == winners[0].customer_id

    async def test_unknown_slot(self, service, customer):
        with pytest.raises(SlotNotFound):
            await service.reserve_slot(str(uuid.uuid4()), customer["id"])

    async def test_unknown_customer(self, service, consultant):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        with pytest.raises(CustomerNotFound):
            await service.reserve_slot(slot.id, str(uuid.uuid4()))

        assert (await service.get_slot(slot.id)).is_booked is False

    async def test_malformed_ids(self, service, customer):
        with pytest.raises(InvalidIdentifier):
            await service.reserve_slot("42", customer["id"])


class TestDeleteSlot:
    async def test_delete_unbooked_slot(self, service, consultant):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))

        summary = await service.delete_slot(slot.id)

        assert summary.deleted_slot_ids == [slot.id]
        assert summary.deleted_count == 1
        assert summary.recurrence_pattern_id is None
        assert await service.get_slot(slot.id) is None

    async def test_delete_booked_slot_is_rejected(self, service, consultant, customer):
        slot = await service.create_slot(consultant["id"], utc(2025, 3, 10, 10), utc(2025, 3, 10, 11))
        await service.reserve_slot(slot.id, customer["id"])

        with pytest.raises(SlotBooked):
            await service.delete_slot(slot.id)

        assert (await service.get_slot(slot.id)).is_booked is True

    async def test_delete_unknown_slot(self, service):
        with pytest.raises(SlotNotFound):
            await service.delete_slot(str(uuid.uuid4()))

    async def test_delete_in_series_keeps_past_and_booked(
        self, service, clock, consultant, customer
    ):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="2025-03-09T10:00:00Z",
                end_time="2025-03-09T11:00:00Z",
                recurring=RecurrenceRuleIn(frequency="weekly", until="2025-04-06"),
            )
        )
        mar09, mar16, mar23, mar30, apr06 = result.time_slots
        await service.reserve_slot(mar23.id, customer["id"])
        clock.now = utc(2025, 3, 12)

        summary = await service.delete_slot(mar16.id)

        assert summary.deleted_slot_ids[0] == mar16.id
        assert set(summary.deleted_slot_ids) == {mar16.id, mar30.id, apr06.id}
        assert summary.deleted_count == 3
        assert summary.recurrence_pattern_id == result.recurrence_pattern.id
        assert summary.retained_booked_count == 1
        assert summary.pattern_deleted is False

        assert await service.get_slot(mar09.id) is not None
        assert (await service.get_slot(mar23.id)).is_booked is True

    async def test_deleting_whole_series_removes_pattern(self, service, store, consultant):
        result = await service.create_time_slots(
            TimeSlotCreate(
                consultant_id=consultant["id"],
                start_time="2025-03-09T10:00:00Z",
                end_time="2025-03-09T11:00:00Z",
                recurring=RecurrenceRuleIn(frequency="weekly", until="2025-03-16"),
            )
        )

        summary = await service.delete_slot(result.time_slots[1].id)

        assert summary.deleted_count == 2
        assert summary.pattern_deleted is True
        async with store.session() as session:
            pattern = await RecurrencePatternRepository(session).get_pattern_by_id(
                result.recurrence_pattern.id
            )
        assert pattern is None


class TestListSlots:
    @pytest.fixture
    async def schedule(self, service, consultant, customer):
        slots = [
            await service.create_slot(consultant["id"], utc(2025, 3, day, 15), utc(2025, 3, day, 16))
            for day in (20, 10, 31, 5)
        ]
        april = await service.create_slot(consultant["id"], utc(2025, 4, 1, 3), utc(2025, 4, 1, 4))
        await service.reserve_slot(slots[0].id, customer["id"])
        return slots, april

    async def test_ordered_and_unbooked_only(self, service, consultant, schedule):
        page = await service.list_slots(SlotQuery(consultant_id=consultant["id"]))

        assert [s.start_time.day for s in page.time_slots] == [5, 10, 31, 1]
        assert all(not s.is_booked for s in page.time_slots)
        assert page.time_slots[0].consultant_name == "Dr. Sarah Smith"
        assert page.pagination.total_items == 4

    async def test_include_booked(self, service, consultant, schedule):
        page = await service.list_slots(
            SlotQuery(consultant_id=consultant["id"], include_booked=True)
        )

        booked = [s for s in page.time_slots if s.is_booked]
        assert len(page.time_slots) == 5
        assert booked[0].customer_name == "Alice Johnson"

    async def test_month_filter_uses_zone(self, service, consultant, schedule):
        utc_page = await service.list_slots(SlotQuery(consultant_id=consultant["id"], month="2025-03"))
        ny_page = await service.list_slots(
            SlotQuery(consultant_id=consultant["id"], month="2025-03", timezone=NEW_YORK)
        )

        # 1 April 03:00 UTC is still 31 March in New York
        assert len(utc_page.time_slots) == 3
        assert len(ny_page.time_slots) == 4

    async def test_date_and_range_filters(self, service, consultant, schedule):
        by_date = await service.list_slots(SlotQuery(consultant_id=consultant["id"], date="2025-03-10"))
        by_range = await service.list_slots(
            SlotQuery(consultant_id=consultant["id"], start_date="2025-03-06", end_date="2025-03-31")
        )

        assert [s.start_time.day for s in by_date.time_slots] == [10]
        assert [s.start_time.day for s in by_range.time_slots] == [10, 31]

    async def test_pagination(self, service, consultant, schedule):
        first = await service.list_slots(SlotQuery(consultant_id=consultant["id"], limit=3))
        second = await service.list_slots(SlotQuery(consultant_id=consultant["id"], limit=3, page=2))

        assert len(first.time_slots) == 3
        assert len(second.time_slots) == 1
        assert second.pagination.model_dump() == {
            "current_page": 2,
            "total_pages": 2,
            "total_items": 4,
            "limit": 3,
        }

    async def test_limit_is_capped(self, service, consultant, schedule):
        page = await service.list_slots(SlotQuery(consultant_id=consultant["id"], limit=1000))
        assert page.pagination.limit == 100

    async def test_listing_is_repeatable(self, service, consultant, schedule):
        query = SlotQuery(consultant_id=consultant["id"], include_booked=True)
        first = await service.list_slots(query)
        second = await service.list_slots(query)
        assert first == second

    @pytest.mark.parametrize(
        "query",
        [
            {"page": 0},
            {"limit": 0},
            {"date": "10/03/2025"},
            {"month": "2025-13"},
            {"start_date": "2025-03-10", "end_date": "2025-03-01"},
        ],
    )
    async def test_invalid_filters(self, service, query):
        with pytest.raises(InvalidFormat):
            await service.list_slots(SlotQuery(**query))

    async def test_empty_result(self, service, consultant):
        page = await service.list_slots(SlotQuery(consultant_id=consultant["id"]))
        assert page.time_slots == []
        assert page.pagination.total_pages == 0
