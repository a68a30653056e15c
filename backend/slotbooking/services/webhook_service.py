"""
Webhook reconciler: applies gateway payment events to local state.

Delivery is at-least-once and unordered, so every write here is a
conditional UPDATE guarded by the expected current status. A duplicate or
late event finds rowcount == 0 and becomes a no-op; the HTTP layer still
answers 200 so the gateway stops retrying.

Authentication of the delivery happens in the route, before this module
sees anything.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_webhook
from slotbooking.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentEvent,
    RefundStatus,
    TransactionStateMachine,
    TransactionStatus,
    booking_event_for,
)
from slotbooking.models.booking import Booking
from slotbooking.models.refund import RefundRequest
from slotbooking.models.timeslot import Timeslot
from slotbooking.models.transaction import Transaction
from slotbooking.services.capacity_service import publish_remaining
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.reservation_service import generate_access_token, release_pending_booking

logger = get_logger(__name__)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    UNKNOWN_REFERENCE = "unknown_reference"
    IGNORED = "ignored"


async def reconcile(
    db: AsyncSession,
    reference: str,
    name: Optional[str],
    psp_reference: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> WebhookOutcome:
    outcome = await _reconcile(db, reference, name, psp_reference, notifier)
    record_webhook(name, outcome.value)
    return outcome


async def _reconcile(
    db: AsyncSession,
    reference: str,
    name: Optional[str],
    psp_reference: Optional[str],
    notifier: Optional[NotificationDispatcher],
) -> WebhookOutcome:
    result = await db.execute(select(Transaction).where(Transaction.reference == reference))
    txn = result.scalar_one_or_none()
    if txn is None:
        logger.warning("webhook_unknown_reference", reference=reference, event_name=name)
        return WebhookOutcome.UNKNOWN_REFERENCE

    event = PaymentEvent.parse(name)
    if event is None:
        logger.info("webhook_event_ignored", reference=reference, event_name=name)
        return WebhookOutcome.IGNORED

    if event is PaymentEvent.REFUNDED:
        return await _mark_refunded(db, reference)

    target = TransactionStateMachine.next_status(txn.status, event)
    if target is None:
        if event is PaymentEvent.AUTHORIZED and txn.status == TransactionStatus.CANCELLED:
            logger.warning(
                "authorized_after_cancellation",
                reference=reference,
                booking_id=txn.booking_id,
                action="manual_follow_up",
            )
        else:
            logger.info("webhook_duplicate", reference=reference, event_name=name, status=txn.status.value)
        return WebhookOutcome.NOOP

    values = {"status": target}
    if psp_reference:
        values["psp_reference"] = psp_reference
    applied = await db.execute(
        update(Transaction)
        .where(Transaction.id == txn.id, Transaction.status == TransactionStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if applied.rowcount != 1:
        await db.rollback()
        logger.info("webhook_lost_race", reference=reference, event_name=name)
        return WebhookOutcome.NOOP

    booking = await db.get(Booking, txn.booking_id)
    timeslot_id = booking.timeslot_id
    user_id = booking.user_id

    booking_target = BookingStateMachine.next_status(BookingStatus.PENDING_PAYMENT, booking_event_for(event))
    if booking_target == BookingStatus.CONFIRMED:
        confirmed = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.PENDING_PAYMENT)
            .values(status=BookingStatus.CONFIRMED, access_token=generate_access_token())
            .execution_options(synchronize_session=False)
        )
        if confirmed.rowcount != 1:
            logger.error("booking_not_pending_on_authorization", reference=reference, booking_id=booking.id)
    else:
        await release_pending_booking(db, booking.id, timeslot_id, booking_event_for(event))

    await db.commit()
    logger.info(
        "payment_reconciled",
        reference=reference,
        event_name=event.value,
        transaction_status=target.value,
        booking_id=booking.id,
    )

    if target == TransactionStatus.CONFIRMED:
        if notifier is not None:
            event_id = await db.scalar(select(Timeslot.event_id).where(Timeslot.id == timeslot_id))
            await notifier.notify(user_id, "booking_confirmed", event_id)
    else:
        await publish_remaining(db, timeslot_id)

    return WebhookOutcome.APPLIED


async def _mark_refunded(db: AsyncSession, reference: str) -> WebhookOutcome:
    result = await db.execute(
        update(RefundRequest)
        .where(
            RefundRequest.reference == reference,
            RefundRequest.status.in_([RefundStatus.PENDING, RefundStatus.FAILED]),
        )
        .values(status=RefundStatus.SUCCEEDED, last_error=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("refund_confirmed_by_gateway", reference=reference)
        return WebhookOutcome.APPLIED
    return WebhookOutcome.NOOP
