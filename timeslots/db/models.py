"""
Database Models

SQLAlchemy declarative models for consultants, customers, recurrence
patterns and time slots. All instants are stored as naive UTC timestamps and
handed back to Python as timezone-aware UTC datetimes.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that behaves the same on PostgreSQL and SQLite.

    Aware values are converted to UTC and stored without tzinfo; naive values
    are assumed to already be UTC. Results always come back aware.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Consultant(Base):
    __tablename__ = "consultants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Bumped by every slot-creating transaction; the row lock it takes
    # serializes schedule changes for one consultant.
    schedule_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)


class RecurrencePattern(Base):
    __tablename__ = "recurrence_patterns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    frequency: Mapped[str] = mapped_column(String(10), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("frequency IN ('weekly', 'monthly')", name="ck_pattern_frequency"),
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week BETWEEN 0 AND 6)",
            name="ck_pattern_day_of_week",
        ),
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month BETWEEN 1 AND 31)",
            name="ck_pattern_day_of_month",
        ),
    )


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    consultant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("consultants.id"), nullable=False, index=True
    )
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=True, index=True
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_booked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    recurrence_pattern_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("recurrence_patterns.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_slot_times"),
        CheckConstraint(
            "(is_booked AND customer_id IS NOT NULL) OR "
            "(NOT is_booked AND customer_id IS NULL)",
            name="ck_slot_booking_customer",
        ),
        Index("ix_time_slots_consultant_start", "consultant_id", "start_time"),
    )
