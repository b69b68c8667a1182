"""
Database Repository Layer

Implements repository pattern for database operations.
Provides abstraction over SQLAlchemy for cleaner business logic.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from timeslots.db.models import Consultant, Customer, RecurrencePattern, TimeSlot
from timeslots.errors import LockTimeout

logger = logging.getLogger(__name__)

# PostgreSQL "lock_not_available", raised when lock_timeout fires
_PG_LOCK_NOT_AVAILABLE = "55P03"


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


def _is_lock_timeout(error: SQLAlchemyError) -> bool:
    if not isinstance(error, DBAPIError):
        return False
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _PG_LOCK_NOT_AVAILABLE:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "lock timeout" in message


def translate_db_error(error: SQLAlchemyError) -> Exception:
    """
    Map a SQLAlchemy failure onto the error the caller should see.

    Lock-wait timeouts become a retryable LockTimeout; everything else is an
    internal DatabaseError.
    """
    if _is_lock_timeout(error):
        logger.warning(f"Lock wait timed out: {error}")
        return LockTimeout(
            "The schedule is busy, please retry",
            details={"reason": "lock_timeout"},
        )
    logger.error(f"Query execution failed: {error}")
    return DatabaseError(f"Database operation failed: {str(error)}")


def slot_to_dict(
    slot: TimeSlot,
    consultant_name: Optional[str] = None,
    customer_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": slot.id,
        "consultant_id": slot.consultant_id,
        "customer_id": slot.customer_id,
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "is_booked": slot.is_booked,
        "is_cancelled": slot.is_cancelled,
        "cancelled_at": slot.cancelled_at,
        "recurrence_pattern_id": slot.recurrence_pattern_id,
        "created_at": slot.created_at,
        "updated_at": slot.updated_at,
        "consultant_name": consultant_name,
        "customer_name": customer_name,
    }


class BaseRepository:
    """Base repository with common database operations."""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: AsyncSession instance for database operations
        """
        self.session = session

    async def execute(self, statement: Any) -> Any:
        """
        Execute a statement, translating driver failures.

        Args:
            statement: SQLAlchemy executable

        Returns:
            Query result

        Raises:
            LockTimeout: If the statement waited too long for a lock
            DatabaseError: If query execution fails
        """
        try:
            return await self.session.execute(statement)
        except SQLAlchemyError as e:
            raise translate_db_error(e) from e

    async def flush(self) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise translate_db_error(e) from e


class ConsultantRepository(BaseRepository):
    """Repository for consultant records."""

    async def create_consultant(self, name: str, email: str) -> Dict[str, Any]:
        consultant = Consultant(name=name, email=email.strip().lower())
        self.session.add(consultant)
        await self.flush()

        logger.info(f"Created consultant {consultant.id}")
        return {
            "id": consultant.id,
            "name": consultant.name,
            "email": consultant.email,
            "created_at": consultant.created_at,
        }

    async def lock_schedule(self, consultant_id: str) -> bool:
        """
        Take the consultant's schedule lock for the current transaction.

        Bumps ``schedule_version``; the row lock (or SQLite write lock) is held
        until the transaction ends, so concurrent slot creation for the same
        consultant is serialized.

        Returns:
            True if the consultant exists, False otherwise
        """
        result = await self.execute(
            update(Consultant)
            .where(Consultant.id == consultant_id)
            .values(schedule_version=Consultant.schedule_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CustomerRepository(BaseRepository):
    """Repository for customer-related database operations."""

    async def create_customer(self, name: str, email: str) -> Dict[str, Any]:
        """
        Create a new customer record.

        Args:
            name: Display name
            email: Contact email address (unique)

        Returns:
            Created customer details
        """
        customer = Customer(name=name, email=email.strip().lower())
        self.session.add(customer)
        await self.flush()

        logger.info(f"Created customer {customer.id}")
        return {
            "id": customer.id,
            "name": customer.name,
            "email": customer.email,
            "created_at": customer.created_at,
        }

    async def get_customer_by_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """
        Get customer by ID.

        Args:
            customer_id: Customer ID

        Returns:
            Customer details or None if not found
        """
        result = await self.execute(select(Customer).where(Customer.id == customer_id))
        customer = result.scalar_one_or_none()

        if not customer:
            logger.debug(f"No customer found with id: {customer_id}")
            return None

        return {
            "id": customer.id,
            "name": customer.name,
            "email": customer.email,
            "created_at": customer.created_at,
        }


class RecurrencePatternRepository(BaseRepository):
    """Repository for recurrence pattern records."""

    async def create_pattern(
        self,
        frequency: str,
        until: datetime.datetime,
        timezone: str,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
    ) -> Dict[str, Any]:
        pattern = RecurrencePattern(
            frequency=frequency,
            until=until,
            timezone=timezone,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        )
        self.session.add(pattern)
        await self.flush()

        return {
            "id": pattern.id,
            "frequency": pattern.frequency,
            "day_of_week": pattern.day_of_week,
            "day_of_month": pattern.day_of_month,
            "until": pattern.until,
            "timezone": pattern.timezone,
            "created_at": pattern.created_at,
            "updated_at": pattern.updated_at,
        }

    async def get_pattern_by_id(self, pattern_id: str) -> Optional[Dict[str, Any]]:
        result = await self.execute(
            select(RecurrencePattern).where(RecurrencePattern.id == pattern_id)
        )
        pattern = result.scalar_one_or_none()
        if not pattern:
            return None

        return {
            "id": pattern.id,
            "frequency": pattern.frequency,
            "day_of_week": pattern.day_of_week,
            "day_of_month": pattern.day_of_month,
            "until": pattern.until,
            "timezone": pattern.timezone,
            "created_at": pattern.created_at,
            "updated_at": pattern.updated_at,
        }

    async def delete_if_orphaned(self, pattern_id: str) -> bool:
        """
        Delete the pattern once no slot references it.

        Returns:
            True if the pattern was deleted
        """
        result = await self.execute(
            select(func.count())
            .select_from(TimeSlot)
            .where(TimeSlot.recurrence_pattern_id == pattern_id)
        )
        if result.scalar_one() > 0:
            return False

        result = await self.execute(
            delete(RecurrencePattern)
            .where(RecurrencePattern.id == pattern_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TimeSlotRepository(BaseRepository):
    """Repository for time slot operations."""

    async def get_slot_by_id(self, slot_id: str) -> Optional[Dict[str, Any]]:
        """
        Get slot details by ID.

        Args:
            slot_id: Unique slot identifier

        Returns:
            Slot details or None if not found
        """
        result = await self.execute(
            select(TimeSlot)
            .where(TimeSlot.id == slot_id)
            .execution_options(populate_existing=True)
        )
        slot = result.scalar_one_or_none()
        return slot_to_dict(slot) if slot else None

    async def find_overlapping(
        self,
        consultant_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
        include_booked: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Find slots of a consultant intersecting ``[start, end)``.

        Intervals that merely touch (one ends where the other starts) do not
        intersect. Cancelled slots never block.
        """
        stmt = select(TimeSlot).where(
            TimeSlot.consultant_id == consultant_id,
            TimeSlot.start_time < end,
            TimeSlot.end_time > start,
            TimeSlot.is_cancelled.is_(False),
        )
        if not include_booked:
            stmt = stmt.where(TimeSlot.is_booked.is_(False))

        result = await self.execute(stmt.order_by(TimeSlot.start_time))
        return [slot_to_dict(slot) for slot in result.scalars().all()]

    async def insert_slots(
        self,
        consultant_id: str,
        intervals: Sequence[Tuple[datetime.datetime, datetime.datetime]],
        recurrence_pattern_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        slots = [
            TimeSlot(
                consultant_id=consultant_id,
                start_time=start,
                end_time=end,
                is_booked=False,
                is_cancelled=False,
                recurrence_pattern_id=recurrence_pattern_id,
            )
            for start, end in intervals
        ]
        self.session.add_all(slots)
        await self.flush()

        return [slot_to_dict(slot) for slot in slots]

    async def reserve(
        self,
        slot_id: str,
        customer_id: str,
        now: datetime.datetime,
    ) -> bool:
        """
        Book the slot if, and only if, it is still unbooked.

        The condition is evaluated by the database against the row it has
        locked, so of several concurrent callers exactly one sees a row count
        of one.

        Returns:
            True if this call booked the slot
        """
        result = await self.execute(
            update(TimeSlot)
            .where(
                TimeSlot.id == slot_id,
                TimeSlot.is_booked.is_(False),
                TimeSlot.is_cancelled.is_(False),
            )
            .values(is_booked=True, customer_id=customer_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_unbooked(self, slot_id: str) -> bool:
        result = await self.execute(
            delete(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.is_booked.is_(False))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_future_unbooked_in_pattern(
        self,
        pattern_id: str,
        now: datetime.datetime,
    ) -> List[str]:
        """
        Delete every unbooked occurrence of a pattern starting at or after now.

        Returns:
            IDs of the deleted slots
        """
        result = await self.execute(
            delete(TimeSlot)
            .where(
                TimeSlot.recurrence_pattern_id == pattern_id,
                TimeSlot.is_booked.is_(False),
                TimeSlot.start_time >= now,
            )
            .returning(TimeSlot.id)
            .execution_options(synchronize_session=False)
        )
        return [row[0] for row in result.all()]

    async def count_booked_in_pattern(self, pattern_id: str) -> int:
        result = await self.execute(
            select(func.count())
            .select_from(TimeSlot)
            .where(
                TimeSlot.recurrence_pattern_id == pattern_id,
                TimeSlot.is_booked.is_(True),
            )
        )
        return result.scalar_one()

    async def list_slots(
        self,
        consultant_id: Optional[str] = None,
        start_from: Optional[datetime.datetime] = None,
        start_before: Optional[datetime.datetime] = None,
        include_booked: bool = False,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List slots ordered by start time, with consultant and customer names.

        Args:
            consultant_id: Only slots of this consultant
            start_from: Only slots starting at or after this instant
            start_before: Only slots starting before this instant
            include_booked: Include booked and cancelled slots
            limit: Page size
            offset: Rows to skip

        Returns:
            Tuple of (page rows, total matching rows)
        """
        conditions = []
        if consultant_id:
            conditions.append(TimeSlot.consultant_id == consultant_id)
        if start_from is not None:
            conditions.append(TimeSlot.start_time >= start_from)
        if start_before is not None:
            conditions.append(TimeSlot.start_time < start_before)
        if not include_booked:
            conditions.append(TimeSlot.is_booked.is_(False))
            conditions.append(TimeSlot.is_cancelled.is_(False))

        count_result = await self.execute(
            select(func.count()).select_from(TimeSlot).where(*conditions)
        )
        total = count_result.scalar_one()

        result = await self.execute(self._listing_query(conditions, limit, offset))
        rows = [
            slot_to_dict(slot, consultant_name=consultant_name, customer_name=customer_name)
            for slot, consultant_name, customer_name in result.all()
        ]
        return rows, total

    @staticmethod
    def _listing_query(conditions: List[Any], limit: int, offset: int) -> Select:
        consultant = aliased(Consultant)
        customer = aliased(Customer)
        return (
            select(TimeSlot, consultant.name, customer.name)
            .outerjoin(consultant, TimeSlot.consultant_id == consultant.id)
            .outerjoin(customer, TimeSlot.customer_id == customer.id)
            .where(*conditions)
            .order_by(TimeSlot.start_time, TimeSlot.id)
            .limit(limit)
            .offset(offset)
        )
