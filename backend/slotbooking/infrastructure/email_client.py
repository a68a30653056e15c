"""
Outbound email through the Resend HTTP API.

Without RESEND_API_KEY the message is logged instead of sent, which keeps
local development and tests free of network calls.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from slotbooking.core.config import Settings
from slotbooking.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class ResendEmailClient:
    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.api_url = settings.RESEND_API_URL
        self.api_key = settings.RESEND_API_KEY
        self.from_email = settings.FROM_EMAIL
        self.http = http or httpx.AsyncClient(timeout=httpx.Timeout(settings.EMAIL_TIMEOUT_SECONDS))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, message: EmailMessage) -> None:
        """Deliver one message. Raises httpx.HTTPError on transport or API failure."""
        if not self.enabled:
            logger.info("email_not_sent_no_api_key", to=message.to, subject=message.subject)
            return

        response = await self.http.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.from_email,
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
            },
        )
        response.raise_for_status()
        logger.info("email_sent", to=message.to, subject=message.subject)

    async def aclose(self) -> None:
        await self.http.aclose()
