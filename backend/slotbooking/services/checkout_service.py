"""
Checkout: reserve a unit, then open the payment at the gateway.

The reservation is committed before the gateway is called, so no database
transaction is held open across network I/O. If payment creation fails the
reservation is rolled back (transaction and booking cancelled, unit
released) and the gateway error propagates to the caller.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.core.config import get_settings
from slotbooking.core.logging import get_logger
from slotbooking.infrastructure.vipps_client import VippsClient
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.reservation_service import (
    Reservation,
    attach_redirect_url,
    reserve,
    rollback_reservation,
)

logger = get_logger(__name__)


async def checkout(
    db: AsyncSession,
    timeslot_id: int,
    user_id: int,
    *,
    gateway: VippsClient,
    notifier: Optional[NotificationDispatcher] = None,
    admission: Optional[AdmissionStrategy] = None,
) -> Reservation:
    reservation = await reserve(db, timeslot_id, user_id, admission=admission)

    if not reservation.payment_required:
        if notifier is not None:
            await notifier.notify(user_id, "booking_confirmed", reservation.event_id)
        return reservation

    return_url = f"{get_settings().VIPPS_PAYMENT_REDIRECT_URI}?ref={reservation.reference}"
    try:
        redirect_url = await gateway.create_payment(
            reservation.reference,
            reservation.amount,
            return_url,
            description=f"Ticket #{reservation.booking_id}",
            currency=reservation.currency,
        )
    except Exception as e:
        # Whatever went wrong, the held unit must not outlive the failed payment.
        logger.error(
            "payment_creation_failed",
            reference=reservation.reference,
            booking_id=reservation.booking_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        await rollback_reservation(db, reservation.reference, reason=getattr(e, "code", type(e).__name__))
        raise

    await attach_redirect_url(db, reservation.reference, redirect_url)
    reservation.redirect_url = redirect_url
    return reservation
