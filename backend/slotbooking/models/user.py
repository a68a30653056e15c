"""
User profile as seen by this service.

Accounts are managed by the external identity service; rows here are the
profile projection needed for ownership checks and notification delivery.
"""

from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    name = Column(String(100), nullable=False, default="")

    bookings = relationship("Booking", back_populates="user", lazy="raise")
    notification_preferences = relationship(
        "NotificationPreference", back_populates="user", uselist=False, lazy="raise"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
