"""
Booking and transaction lifecycles as explicit transition tables.

Each aggregate gets one table mapping (current status, event) to the next
status. Terminal statuses have no outgoing edges for gateway events, which
is what makes webhook re-delivery a no-op: ``next_status`` returns None and
the caller acknowledges without writing.

The same edges are enforced in SQL by the services, as conditional
updates (``... WHERE status = <expected current>``), so the table here is
the single place a reader looks to learn the lifecycle.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from slotbooking.core.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentEvent(str, Enum):
    """Gateway webhook event names this service acts on."""

    AUTHORIZED = "AUTHORIZED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    REFUNDED = "REFUNDED"

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["PaymentEvent"]:
        try:
            return cls(name)
        except ValueError:
            return None

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE_EVENTS


_FAILURE_EVENTS = frozenset(
    {
        PaymentEvent.CANCELLED,
        PaymentEvent.EXPIRED,
        PaymentEvent.FAILED,
        PaymentEvent.REJECTED,
    }
)


class BookingEvent(str, Enum):
    """Internal causes of a booking transition."""

    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_FAILED = "payment_failed"
    CANCEL_REQUESTED = "cancel_requested"
    PAYMENT_EXPIRED = "payment_expired"


class TransactionStateMachine:
    _TRANSITIONS: Dict[Tuple[TransactionStatus, PaymentEvent], TransactionStatus] = {
        (TransactionStatus.PENDING, PaymentEvent.AUTHORIZED): TransactionStatus.CONFIRMED,
        (TransactionStatus.PENDING, PaymentEvent.CANCELLED): TransactionStatus.CANCELLED,
        (TransactionStatus.PENDING, PaymentEvent.EXPIRED): TransactionStatus.CANCELLED,
        (TransactionStatus.PENDING, PaymentEvent.FAILED): TransactionStatus.CANCELLED,
        (TransactionStatus.PENDING, PaymentEvent.REJECTED): TransactionStatus.CANCELLED,
    }

    @classmethod
    def next_status(
        cls,
        current: TransactionStatus,
        event: PaymentEvent,
    ) -> Optional[TransactionStatus]:
        """Returns the target status, or None when the event is a no-op."""
        cls._ensure_valid_status(current)
        return cls._TRANSITIONS.get((current, event))

    @classmethod
    def is_terminal(cls, status: TransactionStatus) -> bool:
        cls._ensure_valid_status(status)
        return status in (TransactionStatus.CONFIRMED, TransactionStatus.CANCELLED)

    @staticmethod
    def _ensure_valid_status(status: TransactionStatus) -> None:
        if not isinstance(status, TransactionStatus):
            raise TypeError(f"Expected TransactionStatus, got {type(status)}")


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.

    ``confirmed -> cancelled`` exists only for an explicit cancellation by
    the owner or host; gateway events never leave a confirmed booking.
    """

    _TRANSITIONS: Dict[Tuple[BookingStatus, BookingEvent], BookingStatus] = {
        (BookingStatus.PENDING_PAYMENT, BookingEvent.PAYMENT_AUTHORIZED): BookingStatus.CONFIRMED,
        (BookingStatus.PENDING_PAYMENT, BookingEvent.PAYMENT_FAILED): BookingStatus.CANCELLED,
        (BookingStatus.PENDING_PAYMENT, BookingEvent.PAYMENT_EXPIRED): BookingStatus.CANCELLED,
        (BookingStatus.PENDING_PAYMENT, BookingEvent.CANCEL_REQUESTED): BookingStatus.CANCELLED,
        (BookingStatus.CONFIRMED, BookingEvent.CANCEL_REQUESTED): BookingStatus.CANCELLED,
    }

    @classmethod
    def next_status(
        cls,
        current: BookingStatus,
        event: BookingEvent,
    ) -> Optional[BookingStatus]:
        cls._ensure_valid_status(current)
        return cls._TRANSITIONS.get((current, event))

    @classmethod
    def transition(cls, current: BookingStatus, event: BookingEvent) -> BookingStatus:
        """Like next_status, but raises InvalidStateTransitionError instead of returning None."""
        target = cls.next_status(current, event)
        if target is None:
            raise InvalidStateTransitionError(from_state=current.value, to_state=event.value)
        return target

    @classmethod
    def is_active(cls, status: BookingStatus) -> bool:
        """Active bookings hold one unit of timeslot capacity."""
        cls._ensure_valid_status(status)
        return status in (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED)

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(f"Expected BookingStatus, got {type(status)}")


def booking_event_for(event: PaymentEvent) -> Optional[BookingEvent]:
    """Maps a gateway event to the booking event it causes, if any."""
    if event is PaymentEvent.AUTHORIZED:
        return BookingEvent.PAYMENT_AUTHORIZED
    if event is PaymentEvent.EXPIRED:
        return BookingEvent.PAYMENT_EXPIRED
    if event.is_failure:
        return BookingEvent.PAYMENT_FAILED
    return None
