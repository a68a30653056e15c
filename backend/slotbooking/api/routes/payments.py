"""
Ticket purchase endpoints: reserve, payment status and cancel/refund.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.api.dependencies import get_admission_strategy, get_notifier, get_payment_gateway
from slotbooking.core.exceptions import AlreadyReserved
from slotbooking.core.logging import get_logger
from slotbooking.core.security import get_current_user_id
from slotbooking.db.session import get_db
from slotbooking.infrastructure.vipps_client import VippsClient
from slotbooking.schemas.cancellation import RefundRequestBody, RefundResponse
from slotbooking.schemas.reservation import PaymentStatusResponse, ReserveRequest, ReserveResponse
from slotbooking.services.cancellation_service import cancel_booking
from slotbooking.services.checkout_service import checkout
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.reservation_service import get_payment_status

logger = get_logger(__name__)
router = APIRouter(tags=["Payments"])


@router.post("/reserve", response_model=ReserveResponse, response_model_exclude_none=True)
async def reserve_endpoint(
    body: ReserveRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: VippsClient = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
    admission: AdmissionStrategy = Depends(get_admission_strategy),
):
    """
    Reserve one unit of a timeslot.

    Free timeslots are confirmed immediately. Paid ones return the gateway
    redirect URL; the booking stays pending_payment until the webhook
    arrives. Repeating the request returns the existing reservation.
    """
    try:
        reservation = await checkout(
            db,
            body.timeslot_id,
            user_id,
            gateway=gateway,
            notifier=notifier,
            admission=admission,
        )
    except AlreadyReserved as e:
        logger.info("reservation_already_exists", booking_id=e.reservation.booking_id, user_id=user_id)
        return ReserveResponse.from_reservation(e.reservation, status="already_reserved")

    return ReserveResponse.from_reservation(reservation)


@router.get("/status", response_model=PaymentStatusResponse, response_model_exclude_none=True)
async def payment_status_endpoint(
    ref: str = Query(..., min_length=1, max_length=64),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Poll payment state after returning from the gateway."""
    status = await get_payment_status(db, ref, user_id)
    return PaymentStatusResponse(
        status=status.status.value,
        booking_status=status.booking_status.value,
        booking_id=status.booking_id,
        access_token=status.access_token,
    )


@router.post("/refund", response_model=RefundResponse)
async def refund_endpoint(
    body: RefundRequestBody,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: VippsClient = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Cancel a booking; paid bookings are refunded best-effort."""
    result = await cancel_booking(db, body.booking_id, user_id, gateway=gateway, notifier=notifier)
    return RefundResponse(
        booking_id=result.booking_id,
        refund_needed=result.refund_needed,
        refunded=result.refunded,
    )
