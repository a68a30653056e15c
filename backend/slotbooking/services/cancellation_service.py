"""
Cancellation and refund coordination.

Cancelling is local and final: the booking is cancelled and its unit
released in one database transaction, whatever the gateway later says.
If the booking was paid, a RefundRequest row is written in that same
transaction and the refund is attempted after commit. A refund that fails
stays in refund_requests for retry_failed_refunds() to pick up; the
refund Idempotency-Key makes those retries safe.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.exceptions import BookingNotCancellable, Forbidden, NotFound
from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_refund
from slotbooking.domain.state_machine import (
    BookingEvent,
    BookingStateMachine,
    RefundStatus,
    TransactionStateMachine,
    TransactionStatus,
)
from slotbooking.infrastructure.vipps_client import VippsClient
from slotbooking.models.booking import Booking
from slotbooking.models.event import Event
from slotbooking.models.refund import RefundRequest
from slotbooking.models.timeslot import Timeslot
from slotbooking.models.transaction import Transaction
from slotbooking.services.capacity_service import publish_remaining, release_unit
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.reservation_service import latest_transaction

logger = get_logger(__name__)


@dataclass
class CancellationResult:
    booking_id: int
    refund_needed: bool
    refunded: bool


async def cancel_booking(
    db: AsyncSession,
    booking_id: int,
    user_id: int,
    *,
    gateway: VippsClient,
    notifier: Optional[NotificationDispatcher] = None,
) -> CancellationResult:
    """
    Cancel a booking on behalf of its owner or the event host.

    Raises NotFound, Forbidden or BookingNotCancellable. Gateway errors
    during the refund are recorded, never raised.
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", booking_id=booking_id)

    event_id, host_id = (
        await db.execute(
            select(Event.id, Event.host_id)
            .join(Timeslot, Timeslot.event_id == Event.id)
            .where(Timeslot.id == booking.timeslot_id)
        )
    ).one()
    if user_id not in (booking.user_id, host_id):
        raise Forbidden("Only the ticket holder or the event host can cancel", booking_id=booking_id)

    # Lock order is transaction row, then booking row: the same order the
    # webhook reconciler takes them in.
    txn = await latest_transaction(db, booking_id, for_update=True)
    booking = (
        await db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
    ).scalar_one()

    current = booking.status
    if not BookingStateMachine.is_active(current):
        await db.rollback()
        raise BookingNotCancellable("Booking is already cancelled", booking_id=booking_id)
    target = BookingStateMachine.transition(current, BookingEvent.CANCEL_REQUESTED)

    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == current)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise BookingNotCancellable("Booking changed while cancelling", booking_id=booking_id)

    await release_unit(db, booking.timeslot_id)

    refund_request = None
    if txn is not None:
        if txn.status == TransactionStatus.CONFIRMED:
            refund_request = RefundRequest(
                transaction_id=txn.id,
                reference=txn.reference,
                amount=txn.amount,
                currency=txn.currency,
                status=RefundStatus.PENDING,
                attempts=0,
            )
            db.add(refund_request)
        elif not TransactionStateMachine.is_terminal(txn.status):
            cancelled = await db.execute(
                update(Transaction)
                .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING)
                .values(status=TransactionStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )
            if cancelled.rowcount != 1:
                await db.rollback()
                raise BookingNotCancellable("Payment changed while cancelling", booking_id=booking_id)

    await db.commit()
    logger.info(
        "booking_cancelled",
        booking_id=booking_id,
        cancelled_by=user_id,
        previous_status=current.value,
        refund_needed=refund_request is not None,
    )
    await publish_remaining(db, booking.timeslot_id)

    refunded = False
    if refund_request is not None:
        refunded = await attempt_refund(db, gateway, refund_request)

    if notifier is not None:
        await notifier.notify(booking.user_id, "booking_cancelled", event_id, actor_id=user_id)

    return CancellationResult(
        booking_id=booking_id,
        refund_needed=refund_request is not None,
        refunded=refunded,
    )


async def attempt_refund(db: AsyncSession, gateway: VippsClient, refund: RefundRequest) -> bool:
    """One refund attempt. Records the outcome on the row and commits."""
    try:
        await gateway.refund(refund.reference, refund.amount, currency=refund.currency)
    except Exception as e:
        await db.execute(
            update(RefundRequest)
            .where(RefundRequest.id == refund.id, RefundRequest.status != RefundStatus.SUCCEEDED)
            .values(
                status=RefundStatus.FAILED,
                attempts=RefundRequest.attempts + 1,
                last_error=str(e)[:1000],
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        record_refund(False)
        logger.error("refund_failed", reference=refund.reference, refund_id=refund.id, error=str(e))
        return False

    await db.execute(
        update(RefundRequest)
        .where(RefundRequest.id == refund.id)
        .values(
            status=RefundStatus.SUCCEEDED,
            attempts=RefundRequest.attempts + 1,
            last_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    record_refund(True)
    logger.info("refund_succeeded", reference=refund.reference, refund_id=refund.id)
    return True


async def retry_failed_refunds(
    db: AsyncSession,
    gateway: VippsClient,
    max_attempts: int,
) -> tuple[int, int]:
    """Re-attempt outstanding refunds below the attempt ceiling. Returns (succeeded, failed)."""
    result = await db.execute(
        select(RefundRequest)
        .where(
            RefundRequest.status.in_([RefundStatus.PENDING, RefundStatus.FAILED]),
            RefundRequest.attempts < max_attempts,
        )
        .order_by(RefundRequest.id)
    )
    outstanding = list(result.scalars().all())

    succeeded = failed = 0
    for refund in outstanding:
        if await attempt_refund(db, gateway, refund):
            succeeded += 1
        else:
            failed += 1

    logger.info("refund_retry_completed", succeeded=succeeded, failed=failed, outstanding=len(outstanding))
    return succeeded, failed
