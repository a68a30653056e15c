"""
Timeslot: the capacity-limited unit a booking reserves.

Key design decisions:
- `remaining` is denormalized (avoids COUNT over bookings on the hot path)
  and is only changed through conditional UPDATEs in capacity_service
- CHECK constraints are the final safety net: remaining never goes
  negative and never exceeds capacity
- `price` is in minor units (øre); 0 means free entry
"""

from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin


class Timeslot(Base, TimestampMixin):
    __tablename__ = "timeslots"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    price = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="NOK")
    capacity = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    event = relationship("Event", back_populates="timeslots", lazy="raise")
    bookings = relationship("Booking", back_populates="timeslot", lazy="raise")

    __table_args__ = (
        CheckConstraint("remaining >= 0", name="check_remaining_non_negative"),
        CheckConstraint("capacity >= 0", name="check_capacity_non_negative"),
        CheckConstraint("remaining <= capacity", name="check_remaining_lte_capacity"),
        CheckConstraint("price >= 0", name="check_price_non_negative"),
        Index("ix_timeslots_event_starts_at", "event_id", "starts_at"),
    )

    def __repr__(self) -> str:
        return f"<Timeslot(id={self.id}, remaining={self.remaining}/{self.capacity}, price={self.price})>"
