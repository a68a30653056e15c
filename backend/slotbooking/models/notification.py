"""
Per-user email opt-outs. A missing row means every type is enabled.
"""

from sqlalchemy import Boolean, Column, Integer, ForeignKey
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin


class NotificationPreference(Base, TimestampMixin):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    email_rsvp = Column(Boolean, nullable=False, default=True)
    email_comment = Column(Boolean, nullable=False, default=True)
    email_access_request = Column(Boolean, nullable=False, default=True)
    email_invitation = Column(Boolean, nullable=False, default=True)
    email_reminder = Column(Boolean, nullable=False, default=True)
    email_booking = Column(Boolean, nullable=False, default=True)

    user = relationship("User", back_populates="notification_preferences", lazy="raise")
