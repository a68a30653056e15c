"""
Vipps ePayment webhook receiver.

Response codes steer gateway retries: 2xx and 4xx stop them, 5xx asks for
redelivery. The shared secret is checked before the body is read.
"""

import hmac

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from slotbooking.api.dependencies import get_notifier
from slotbooking.core.config import Settings, get_settings
from slotbooking.core.exceptions import InvalidPayload, Unauthorized
from slotbooking.core.logging import get_logger
from slotbooking.db.session import get_db
from slotbooking.schemas.webhook import VippsWebhookEvent
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.webhook_service import reconcile

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"])


def verify_webhook_secret(request: Request, settings: Settings = Depends(get_settings)) -> None:
    secret = settings.VIPPS_WEBHOOK_SECRET
    supplied = request.headers.get("Authorization", "")
    if not secret:
        logger.error("webhook_secret_not_configured")
        raise Unauthorized("Webhook secret not configured")
    if not hmac.compare_digest(supplied.encode(), secret.encode()):
        logger.warning("webhook_unauthorized")
        raise Unauthorized("Invalid webhook credentials")


@router.post("/webhook", dependencies=[Depends(verify_webhook_secret)])
async def vipps_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    try:
        payload = VippsWebhookEvent.model_validate(await request.json())
    except ValueError as e:
        raise InvalidPayload("Malformed webhook body", reason=str(e))

    if not payload.reference:
        raise InvalidPayload("Missing reference")

    logger.info("webhook_received", reference=payload.reference, event_name=payload.name)
    outcome = await reconcile(
        db,
        payload.reference,
        payload.name,
        psp_reference=payload.psp_reference,
        notifier=notifier,
    )
    return {"ok": True, "outcome": outcome.value}
