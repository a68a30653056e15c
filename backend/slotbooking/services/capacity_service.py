"""
Timeslot capacity: the only code that changes Timeslot.remaining.

CONCURRENCY STRATEGY: Single Conditional UPDATE
===============================================

Problem:
  Two users try to take the last unit simultaneously.
  Both read remaining=1, both decrement to 0, both succeed.
  Result: Overbooking.

Solution:
  UPDATE timeslots SET remaining = remaining - 1
  WHERE id = :timeslot_id AND remaining > 0

  The database evaluates the predicate and the decrement under the row
  lock, so exactly `remaining` concurrent callers see rowcount == 1 and
  everybody else sees 0. No read-modify-write, no version column, no
  retry loop. Because it is the first write of the reservation
  transaction, the row lock it takes is also held across the duplicate
  check and the inserts that follow.

  Release is the mirror image guarded by `remaining < capacity`.
  CHECK constraints on the table are the final safety net.
"""

from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.logging import get_logger
from slotbooking.models.timeslot import Timeslot
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.strategy_factory import get_admission

logger = get_logger(__name__)


async def reserve_unit(db: AsyncSession, timeslot_id: int) -> bool:
    """Take one unit. False means the timeslot is sold out (or missing)."""
    result = await db.execute(
        update(Timeslot)
        .where(Timeslot.id == timeslot_id, Timeslot.remaining > 0)
        .values(remaining=Timeslot.remaining - 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_unit(db: AsyncSession, timeslot_id: int) -> bool:
    """Give one unit back. Never raises remaining above capacity."""
    result = await db.execute(
        update(Timeslot)
        .where(Timeslot.id == timeslot_id, Timeslot.remaining < Timeslot.capacity)
        .values(remaining=Timeslot.remaining + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error("capacity_release_skipped", timeslot_id=timeslot_id, reason="already_at_capacity")
        return False
    return True


async def remaining_units(db: AsyncSession, timeslot_id: int) -> Optional[int]:
    result = await db.execute(select(Timeslot.remaining).where(Timeslot.id == timeslot_id))
    return result.scalar_one_or_none()


async def publish_remaining(
    db: AsyncSession,
    timeslot_id: int,
    admission: Optional[AdmissionStrategy] = None,
) -> None:
    """Push the committed remaining count to the admission gate."""
    admission = admission or await get_admission()
    remaining = await remaining_units(db, timeslot_id)
    if remaining is not None:
        await admission.sync(timeslot_id, remaining)
