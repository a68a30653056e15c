"""
Domain error taxonomy.

Services raise these; a single FastAPI exception handler (see main.py)
renders them as ``{"error": <code>, "detail": <message>}`` with the
class's HTTP status. Nothing here imports FastAPI so services stay
usable from scripts and tasks.
"""

from typing import Any, Optional


class SlotBookingError(Exception):
    """Base exception for all domain-level errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.code
        self.context = context
        super().__init__(self.message)


class CapacityExceeded(SlotBookingError):
    """Timeslot had no remaining units at the atomic check. Pick another slot."""

    status_code = 400
    code = "sold_out"


class AlreadyReserved(SlotBookingError):
    """
    The user already holds a non-cancelled booking for the timeslot.
    Carries the existing reservation so callers can return it unchanged.
    """

    status_code = 200
    code = "already_reserved"

    def __init__(self, reservation: Any, message: Optional[str] = None):
        self.reservation = reservation
        super().__init__(message or "Booking already exists for this timeslot")


class TimeslotUnavailable(SlotBookingError):
    """Timeslot is inactive or has already started."""

    status_code = 400
    code = "timeslot_unavailable"


class BookingNotCancellable(SlotBookingError):
    status_code = 400
    code = "already_cancelled"


class Unauthorized(SlotBookingError):
    """Bad webhook secret or missing/invalid credentials. No state change."""

    status_code = 401
    code = "unauthorized"


class Forbidden(Unauthorized):
    """Caller is authenticated but does not own the resource."""

    status_code = 403
    code = "forbidden"


class NotFound(SlotBookingError):
    status_code = 404
    code = "not_found"


class PaymentRejected(SlotBookingError):
    """Gateway refused the request (4xx). Retrying with the same input will not help."""

    status_code = 400
    code = "payment_rejected"


class GatewayUnavailable(SlotBookingError):
    """Transient gateway failure: timeout, transport error or 5xx."""

    status_code = 503
    code = "gateway_unavailable"


class InvalidStateTransitionError(SlotBookingError):
    """Raised when an illegal booking or transaction transition is attempted."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal state transition attempted: {from_state} -> {to_state}"
        )


class InvalidPayload(SlotBookingError):
    """Authenticated webhook delivery that cannot be processed as sent."""

    status_code = 400
    code = "invalid_payload"
