"""
Transaction: one payment attempt against the gateway for a booking.

`reference` is generated by us, unique and immutable; it is the gateway
idempotency key and the only key webhooks are matched on.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Enum, CheckConstraint
from sqlalchemy.orm import relationship

from slotbooking.db.base import Base, TimestampMixin
from slotbooking.domain.state_machine import TransactionStatus
from slotbooking.models.booking import _enum_values


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    reference = Column(String(64), nullable=False, unique=True, index=True)
    psp_reference = Column(String(128), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="NOK")
    status = Column(
        Enum(
            TransactionStatus,
            name="transaction_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    redirect_url = Column(String(1024), nullable=True)

    booking = relationship("Booking", back_populates="transactions", lazy="raise")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_transaction_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, reference={self.reference}, status={self.status})>"
