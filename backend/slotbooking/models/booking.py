"""
Booking model representing a user's hold on one unit of a timeslot.

Key design decisions:
- Bookings are never deleted; cancellation is a status change (audit trail)
- Partial unique index allows one non-cancelled booking per user per
  timeslot while keeping any number of cancelled ones
- access_token is generated on confirmation and shown at the door
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index, Enum, text
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin
from slotbooking.domain.state_machine import BookingStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    timeslot_id = Column(Integer, ForeignKey("timeslots.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        Enum(
            BookingStatus,
            name="booking_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BookingStatus.PENDING_PAYMENT,
    )
    access_token = Column(String(64), nullable=True, unique=True)

    user = relationship("User", back_populates="bookings", lazy="raise")
    timeslot = relationship("Timeslot", back_populates="bookings", lazy="raise")
    transactions = relationship("Transaction", back_populates="booking", lazy="raise")

    __table_args__ = (
        Index(
            "uq_bookings_active_user_timeslot",
            "timeslot_id",
            "user_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, user={self.user_id}, timeslot={self.timeslot_id}, status={self.status})>"
