"""
Overlap Detection

Detects conflicts between candidate intervals and a consultant's existing
slots. Intervals are half-open, ``[start, end)``: two intervals that only
touch at a boundary do not overlap.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Sequence, Tuple

from timeslots.db.repository import TimeSlotRepository
from timeslots.errors import SlotOverlap

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


async def check_overlap(
    slots: TimeSlotRepository,
    consultant_id: str,
    start: datetime,
    end: datetime,
    include_booked: bool = False,
) -> Dict[str, Any]:
    """
    Detect overlaps with the consultant's persisted slots.

    Args:
        slots: Repository bound to the caller's transaction
        consultant_id: Owner of the schedule
        start: Candidate start
        end: Candidate end
        include_booked: Also treat booked slots as blocking

    Returns:
        dict: {
            "has_overlap": bool,
            "overlapping_slots": [list of slot ids],
        }
    """
    existing = await slots.find_overlapping(
        consultant_id, start, end, include_booked=include_booked
    )
    return {
        "has_overlap": bool(existing),
        "overlapping_slots": [slot["id"] for slot in existing],
    }


async def ensure_no_overlap(
    slots: TimeSlotRepository,
    consultant_id: str,
    intervals: Sequence[Interval],
    include_booked: bool = False,
) -> None:
    """
    Validate a batch of intervals as if inserted one at a time.

    Each interval, in chronological order, is checked against the persisted
    schedule and against the intervals of the batch accepted before it. Must
    run inside the transaction that will insert the batch, after the
    consultant's schedule lock has been taken.

    Raises:
        SlotOverlap: On the first interval that collides
    """
    accepted: List[Interval] = []

    for start, end in sorted(intervals):
        result = await check_overlap(
            slots, consultant_id, start, end, include_booked=include_booked
        )
        if result["has_overlap"]:
            logger.warning(
                f"Overlap for consultant {consultant_id} at {start.isoformat()}: "
                f"{result['overlapping_slots']}"
            )
            raise SlotOverlap(
                "Time slot overlaps with existing slot",
                details={
                    "start_time": start.isoformat(),
                    "end_time": end.isoformat(),
                    "conflicting_slot_ids": result["overlapping_slots"],
                },
            )

        for other_start, other_end in accepted:
            if intervals_overlap(start, end, other_start, other_end):
                raise SlotOverlap(
                    "Time slots in the request overlap each other",
                    details={
                        "start_time": start.isoformat(),
                        "end_time": end.isoformat(),
                        "conflicting_start_time": other_start.isoformat(),
                    },
                )

        accepted.append((start, end))
