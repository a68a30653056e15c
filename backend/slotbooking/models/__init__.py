from slotbooking.models.user import User
from slotbooking.models.event import Event
from slotbooking.models.timeslot import Timeslot
from slotbooking.models.booking import Booking
from slotbooking.models.transaction import Transaction
from slotbooking.models.refund import RefundRequest
from slotbooking.models.notification import NotificationPreference

__all__ = [
    "User", "Event", "Timeslot", "Booking", "Transaction",
    "RefundRequest", "NotificationPreference",
]
