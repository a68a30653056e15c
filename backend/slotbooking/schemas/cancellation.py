"""
Pydantic schemas for the cancellation/refund endpoint.
"""

from pydantic import BaseModel, Field


class RefundRequestBody(BaseModel):
    booking_id: int = Field(gt=0)


class RefundResponse(BaseModel):
    status: str = "success"
    booking_id: int
    refund_needed: bool
    refunded: bool
