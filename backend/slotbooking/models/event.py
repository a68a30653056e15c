"""
Event owned by a host. Event CRUD lives elsewhere; this service reads the
title for notifications and host_id for cancellation rights.
"""

from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    host = relationship("User", lazy="raise")
    timeslots = relationship("Timeslot", back_populates="event", lazy="raise")

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title})>"
