"""
Time Slot Routes

Thin HTTP layer over SlotService: request parsing, status codes and the
response envelope. All scheduling rules live in the service.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from timeslots.config import get_settings
from timeslots.db.session import get_store
from timeslots.errors import SlotNotFound
from timeslots.models.schemas import (
    APIResponse,
    SlotQuery,
    SlotReservation,
    TimeSlotCreate,
)
from timeslots.services.slots import SlotService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/time-slots", tags=["time-slots"])


def get_slot_service() -> SlotService:
    return SlotService(get_store(), get_settings())


@router.post("", status_code=201, response_model=APIResponse)
async def create_time_slot(
    payload: TimeSlotCreate,
    service: SlotService = Depends(get_slot_service),
) -> APIResponse:
    result = await service.create_time_slots(payload)
    return APIResponse(
        message="Recurring slots created" if payload.recurring else "Time slot created",
        data={
            "time_slots": result.time_slots,
            "recurrence_pattern": result.recurrence_pattern,
        },
        warnings=result.warnings,
    )


@router.get("", response_model=APIResponse)
async def list_time_slots(
    consultant_id: Optional[str] = None,
    date: Optional[str] = None,
    month: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    timezone: Optional[str] = None,
    include_booked: bool = False,
    page: int = Query(default=1),
    limit: Optional[int] = Query(default=None),
    service: SlotService = Depends(get_slot_service),
) -> APIResponse:
    page_result = await service.list_slots(
        SlotQuery(
            consultant_id=consultant_id,
            date=date,
            month=month,
            start_date=start_date,
            end_date=end_date,
            timezone=timezone,
            include_booked=include_booked,
            page=page,
            limit=limit,
        )
    )
    return APIResponse(data=page_result)


@router.get("/{slot_id}", response_model=APIResponse)
async def get_time_slot(
    slot_id: str,
    service: SlotService = Depends(get_slot_service),
) -> APIResponse:
    slot = await service.get_slot(slot_id)
    if slot is None:
        raise SlotNotFound("Time slot not found", details={"slot_id": slot_id})
    return APIResponse(data=slot)


@router.post("/{slot_id}/reserve", response_model=APIResponse)
async def reserve_time_slot(
    slot_id: str,
    payload: SlotReservation,
    service: SlotService = Depends(get_slot_service),
) -> APIResponse:
    slot = await service.reserve_slot(slot_id, payload.customer_id)
    return APIResponse(message="Time slot reserved", data=slot)


@router.delete("/{slot_id}", response_model=APIResponse)
async def delete_time_slot(
    slot_id: str,
    service: SlotService = Depends(get_slot_service),
) -> APIResponse:
    summary = await service.delete_slot(slot_id)
    message = (
        "Recurring time slots deleted"
        if summary.recurrence_pattern_id
        else "Time slot deleted successfully"
    )
    return APIResponse(message=message, data=summary)
