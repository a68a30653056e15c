"""
Read-back helpers for assertions.

Services write with synchronize_session=False, so objects already in a
test session's identity map can be stale; these always go to the database.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.domain.state_machine import BookingStatus
from slotbooking.models import Booking, RefundRequest, Timeslot, Transaction


async def fresh(db: AsyncSession, model, **filters):
    stmt = select(model).filter_by(**filters).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def remaining(db: AsyncSession, timeslot_id: int) -> int:
    return await db.scalar(select(Timeslot.remaining).where(Timeslot.id == timeslot_id))


async def active_bookings(db: AsyncSession, timeslot_id: int) -> int:
    return await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.timeslot_id == timeslot_id,
            Booking.status != BookingStatus.CANCELLED,
        )
    )


async def booking(db: AsyncSession, booking_id: int) -> Booking:
    return await fresh(db, Booking, id=booking_id)


async def transaction(db: AsyncSession, reference: str) -> Transaction:
    return await fresh(db, Transaction, reference=reference)


async def refund_request(db: AsyncSession, reference: str) -> RefundRequest:
    return await fresh(db, RefundRequest, reference=reference)
