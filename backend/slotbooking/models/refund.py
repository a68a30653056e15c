"""
Durable record of a refund owed to a user.

Written in the same DB transaction that cancels a paid booking, so a refund
that fails at the gateway is never lost; tasks.retry-refunds picks up rows
still in pending/failed.
"""

from sqlalchemy import Column, Integer, String, Text, ForeignKey, Enum

from slotbooking.db.base import Base, TimestampMixin
from slotbooking.domain.state_machine import RefundStatus
from slotbooking.models.booking import _enum_values


class RefundRequest(Base, TimestampMixin):
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, unique=True)
    reference = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="NOK")
    status = Column(
        Enum(
            RefundStatus,
            name="refund_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=RefundStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RefundRequest(id={self.id}, reference={self.reference}, status={self.status})>"
