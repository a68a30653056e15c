"""
Pydantic schemas for reservation and payment status endpoints.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ReserveRequest(BaseModel):
    timeslot_id: int = Field(gt=0)


class ReserveResponse(BaseModel):
    status: str
    payment_required: bool
    booking_id: int
    vipps_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    access_token: Optional[str] = None

    @classmethod
    def from_reservation(cls, reservation, status: str = "success") -> "ReserveResponse":
        return cls(
            status=status,
            payment_required=reservation.payment_required,
            booking_id=reservation.booking_id,
            vipps_reference=reservation.reference,
            redirect_url=reservation.redirect_url,
            access_token=reservation.access_token,
        )


class PaymentStatusResponse(BaseModel):
    status: str
    booking_status: str
    booking_id: int
    access_token: Optional[str] = None
