"""
Pydantic Schemas

Data validation and serialization schemas for API and service results.
Field-level rules that belong to the scheduling domain (frequency values,
time formats, zone names) are checked by the scheduling core so that they
surface as scheduling errors rather than generic validation failures.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class RecurrenceRuleIn(BaseModel):
    frequency: str = Field(..., description="weekly or monthly")
    until: str = Field(..., description="YYYY-MM-DD (inclusive) or ISO 8601 date-time")
    day_of_week: Optional[int] = Field(default=None, description="0 = Sunday ... 6 = Saturday")
    day_of_month: Optional[int] = Field(default=None, description="1 - 31")


class TimeSlotCreate(BaseModel):
    consultant_id: str
    start_time: str = Field(..., description="ISO 8601 date-time, or HH:MM")
    end_time: str = Field(..., description="ISO 8601 date-time, or HH:MM")
    timezone: Optional[str] = Field(default=None, description="IANA zone, e.g. Europe/Berlin")
    recurring: Optional[RecurrenceRuleIn] = None


class SlotReservation(BaseModel):
    customer_id: str


class SlotQuery(BaseModel):
    consultant_id: Optional[str] = None
    date: Optional[str] = Field(default=None, description="YYYY-MM-DD")
    month: Optional[str] = Field(default=None, description="YYYY-MM")
    start_date: Optional[str] = Field(default=None, description="YYYY-MM-DD, inclusive")
    end_date: Optional[str] = Field(default=None, description="YYYY-MM-DD, inclusive")
    timezone: Optional[str] = None
    include_booked: bool = False
    page: int = 1
    limit: Optional[int] = None


class TimeSlotResponse(BaseModel):
    id: str
    consultant_id: str
    customer_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_booked: bool
    is_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    recurrence_pattern_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    consultant_name: Optional[str] = None
    customer_name: Optional[str] = None


class RecurrencePatternResponse(BaseModel):
    id: str
    frequency: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    until: datetime
    timezone: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SlotWarning(BaseModel):
    message: str
    start_time: datetime
    end_time: datetime


class SlotCreationResult(BaseModel):
    time_slots: List[TimeSlotResponse]
    recurrence_pattern: Optional[RecurrencePatternResponse] = None
    warnings: List[SlotWarning] = Field(default_factory=list)


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    limit: int


class TimeSlotPage(BaseModel):
    time_slots: List[TimeSlotResponse]
    pagination: Pagination


class DeletionSummary(BaseModel):
    deleted_slot_ids: List[str]
    deleted_count: int
    recurrence_pattern_id: Optional[str] = None
    pattern_deleted: bool = False
    retained_booked_count: int = 0


class APIResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    warnings: List[SlotWarning] = Field(default_factory=list)
