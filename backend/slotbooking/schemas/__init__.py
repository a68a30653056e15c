from slotbooking.schemas.reservation import ReserveRequest, ReserveResponse, PaymentStatusResponse
from slotbooking.schemas.cancellation import RefundRequestBody, RefundResponse
from slotbooking.schemas.webhook import VippsWebhookEvent

__all__ = [
    "ReserveRequest", "ReserveResponse", "PaymentStatusResponse",
    "RefundRequestBody", "RefundResponse",
    "VippsWebhookEvent",
]
