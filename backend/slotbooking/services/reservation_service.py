"""
Reservation manager: turns purchase intent into a Booking (and, for paid
timeslots, a pending Transaction) inside one database transaction.

Order of operations in reserve():
  1. Load the timeslot (NotFound / TimeslotUnavailable)
  2. Ask the admission gate (advisory, may fail fast)
  3. Conditional capacity decrement (CapacityExceeded on rowcount 0)
  4. Duplicate check under the row lock taken by step 3 (AlreadyReserved)
  5. Insert Booking (+ Transaction) and commit

The partial unique index on bookings(timeslot_id, user_id) backs step 4:
if it fires anyway, the transaction is rolled back and the existing
reservation is returned as AlreadyReserved.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.config import get_settings
from slotbooking.core.exceptions import AlreadyReserved, CapacityExceeded, NotFound, TimeslotUnavailable
from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_reservation
from slotbooking.domain.state_machine import BookingEvent, BookingStateMachine, BookingStatus, TransactionStatus
from slotbooking.models.booking import Booking
from slotbooking.models.timeslot import Timeslot
from slotbooking.models.transaction import Transaction
from slotbooking.services.capacity_service import publish_remaining, release_unit, reserve_unit
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.strategy_factory import get_admission

logger = get_logger(__name__)


@dataclass
class Reservation:
    booking_id: int
    timeslot_id: int
    event_id: int
    status: BookingStatus
    payment_required: bool
    amount: int
    currency: str
    reference: Optional[str] = None
    redirect_url: Optional[str] = None
    access_token: Optional[str] = None


@dataclass
class PaymentStatus:
    status: TransactionStatus
    booking_status: BookingStatus
    booking_id: int
    access_token: Optional[str] = None


def generate_reference() -> str:
    return f"{get_settings().PAYMENT_REFERENCE_PREFIX}-{uuid.uuid4().hex}"


def generate_access_token() -> str:
    return secrets.token_urlsafe(32)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def reserve(
    db: AsyncSession,
    timeslot_id: int,
    user_id: int,
    *,
    admission: Optional[AdmissionStrategy] = None,
) -> Reservation:
    """
    Reserve one unit of a timeslot for a user.

    Commits on success. Raises NotFound, TimeslotUnavailable,
    CapacityExceeded or AlreadyReserved (carrying the existing reservation).
    """
    timeslot = await db.get(Timeslot, timeslot_id)
    if timeslot is None:
        raise NotFound(f"Timeslot {timeslot_id} not found", timeslot_id=timeslot_id)

    if not timeslot.active or as_utc(timeslot.starts_at) <= datetime.now(timezone.utc):
        record_reservation("unavailable")
        raise TimeslotUnavailable("Timeslot is not open for booking", timeslot_id=timeslot_id)

    price = timeslot.price
    event_id = timeslot.event_id
    currency = timeslot.currency
    admission = admission or await get_admission()

    if not await admission.admit(timeslot_id):
        existing = await find_active_reservation(db, timeslot_id, user_id)
        if existing:
            record_reservation("already_reserved")
            raise AlreadyReserved(existing)
        record_reservation("sold_out")
        raise CapacityExceeded("Timeslot is sold out", timeslot_id=timeslot_id)

    if not await reserve_unit(db, timeslot_id):
        await db.rollback()
        existing = await find_active_reservation(db, timeslot_id, user_id)
        if existing:
            record_reservation("already_reserved")
            raise AlreadyReserved(existing)
        logger.info("reservation_sold_out", timeslot_id=timeslot_id, user_id=user_id)
        record_reservation("sold_out")
        await publish_remaining(db, timeslot_id, admission)
        raise CapacityExceeded("Timeslot is sold out", timeslot_id=timeslot_id)

    existing = await find_active_reservation(db, timeslot_id, user_id)
    if existing:
        await db.rollback()
        record_reservation("already_reserved")
        await publish_remaining(db, timeslot_id, admission)
        raise AlreadyReserved(existing)

    payment_required = price > 0
    booking = Booking(
        timeslot_id=timeslot_id,
        user_id=user_id,
        status=BookingStatus.PENDING_PAYMENT if payment_required else BookingStatus.CONFIRMED,
        access_token=None if payment_required else generate_access_token(),
    )
    db.add(booking)

    reference = None
    try:
        await db.flush()
        if payment_required:
            reference = generate_reference()
            db.add(
                Transaction(
                    booking_id=booking.id,
                    reference=reference,
                    amount=price,
                    currency=currency,
                    status=TransactionStatus.PENDING,
                )
            )
            await db.flush()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_active_reservation(db, timeslot_id, user_id)
        if existing is None:
            raise
        record_reservation("already_reserved")
        await publish_remaining(db, timeslot_id, admission)
        raise AlreadyReserved(existing)

    record_reservation("reserved" if payment_required else "free")
    logger.info(
        "reservation_created",
        booking_id=booking.id,
        timeslot_id=timeslot_id,
        user_id=user_id,
        reference=reference,
        payment_required=payment_required,
    )
    await publish_remaining(db, timeslot_id, admission)

    return Reservation(
        booking_id=booking.id,
        timeslot_id=timeslot_id,
        event_id=event_id,
        status=booking.status,
        payment_required=payment_required,
        amount=price,
        currency=currency,
        reference=reference,
        access_token=booking.access_token,
    )


async def find_active_reservation(
    db: AsyncSession,
    timeslot_id: int,
    user_id: int,
) -> Optional[Reservation]:
    """The user's non-cancelled booking for a timeslot, with its latest transaction."""
    result = await db.execute(
        select(Booking, Timeslot.event_id, Timeslot.price, Timeslot.currency)
        .join(Timeslot, Timeslot.id == Booking.timeslot_id)
        .where(
            Booking.timeslot_id == timeslot_id,
            Booking.user_id == user_id,
            Booking.status != BookingStatus.CANCELLED,
        )
    )
    row = result.first()
    if row is None:
        return None
    booking, event_id, price, currency = row

    txn = await latest_transaction(db, booking.id)
    return Reservation(
        booking_id=booking.id,
        timeslot_id=timeslot_id,
        event_id=event_id,
        status=booking.status,
        payment_required=txn is not None,
        amount=txn.amount if txn else price,
        currency=txn.currency if txn else currency,
        reference=txn.reference if txn else None,
        redirect_url=txn.redirect_url if txn else None,
        access_token=booking.access_token if booking.status == BookingStatus.CONFIRMED else None,
    )


async def latest_transaction(
    db: AsyncSession,
    booking_id: int,
    for_update: bool = False,
) -> Optional[Transaction]:
    stmt = (
        select(Transaction)
        .where(Transaction.booking_id == booking_id)
        .order_by(Transaction.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def release_pending_booking(
    db: AsyncSession,
    booking_id: int,
    timeslot_id: int,
    event: BookingEvent = BookingEvent.PAYMENT_FAILED,
) -> bool:
    """
    Move a pending_payment booking along `event`, releasing the unit it held.

    Does not commit. Returns False when the booking had already left
    pending_payment, in which case capacity is left untouched.
    """
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING_PAYMENT)
        .values(status=BookingStateMachine.transition(BookingStatus.PENDING_PAYMENT, event))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await release_unit(db, timeslot_id)
    return True


async def cancel_pending_transaction(
    db: AsyncSession,
    txn: Transaction,
    event: BookingEvent = BookingEvent.PAYMENT_FAILED,
) -> bool:
    """
    Move a pending transaction and its booking to cancelled. Does not commit.

    Returns False when the transaction was no longer pending.
    """
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING)
        .values(status=TransactionStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    booking = await db.get(Booking, txn.booking_id)
    await release_pending_booking(db, booking.id, booking.timeslot_id, event)
    return True


async def rollback_reservation(db: AsyncSession, reference: str, reason: str) -> None:
    """Undo a paid reservation whose payment could not be created."""
    result = await db.execute(select(Transaction).where(Transaction.reference == reference))
    txn = result.scalar_one_or_none()
    if txn is None:
        return

    cancelled = await cancel_pending_transaction(db, txn)
    await db.commit()
    logger.warning("reservation_rolled_back", reference=reference, reason=reason, applied=cancelled)
    record_reservation("rolled_back")

    booking = await db.get(Booking, txn.booking_id)
    await publish_remaining(db, booking.timeslot_id)


async def attach_redirect_url(db: AsyncSession, reference: str, redirect_url: str) -> None:
    await db.execute(
        update(Transaction)
        .where(Transaction.reference == reference)
        .values(redirect_url=redirect_url)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def get_payment_status(db: AsyncSession, reference: str, user_id: int) -> PaymentStatus:
    """Transaction and booking status for the payment return page. Owner only."""
    result = await db.execute(
        select(Transaction, Booking)
        .join(Booking, Booking.id == Transaction.booking_id)
        .where(Transaction.reference == reference)
    )
    row = result.first()
    if row is None or row[1].user_id != user_id:
        raise NotFound("Payment not found", reference=reference)

    txn, booking = row
    return PaymentStatus(
        status=txn.status,
        booking_status=booking.status,
        booking_id=booking.id,
        access_token=booking.access_token if booking.status == BookingStatus.CONFIRMED else None,
    )


async def expire_pending_bookings(db: AsyncSession, older_than_minutes: int) -> int:
    """
    Cancel pending payments older than the cutoff and release their units.

    Uses the same guarded updates as the webhook path, so a sweep racing an
    AUTHORIZED webhook cancels nothing the webhook already confirmed.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
    result = await db.execute(
        select(Transaction)
        .where(Transaction.status == TransactionStatus.PENDING, Transaction.created_at < cutoff)
        .order_by(Transaction.id)
    )
    stale = list(result.scalars().all())

    expired = 0
    timeslot_ids = set()
    for txn in stale:
        if await cancel_pending_transaction(db, txn, BookingEvent.PAYMENT_EXPIRED):
            expired += 1
            booking = await db.get(Booking, txn.booking_id)
            timeslot_ids.add(booking.timeslot_id)
            logger.info("pending_payment_expired", reference=txn.reference, booking_id=txn.booking_id)
    await db.commit()

    for timeslot_id in timeslot_ids:
        await publish_remaining(db, timeslot_id)

    logger.info("expiry_sweep_completed", expired=expired, cutoff=cutoff.isoformat())
    return expired
