"""
Vipps ePayment API client.

Covers the three calls the booking flow needs: access-token acquisition,
payment creation and refund. Every payment/refund request carries an
Idempotency-Key derived from our transaction reference, so the bounded
retries below can never create a second gateway-side payment.

Error mapping:
  - transport errors, timeouts and 5xx  -> GatewayUnavailable (after retries)
  - malformed token response            -> GatewayUnavailable
  - other 4xx                           -> PaymentRejected
  - 401 on an API call                  -> cached token dropped, call retried
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Tuple

import httpx

from slotbooking.core.config import Settings
from slotbooking.core.exceptions import GatewayUnavailable, PaymentRejected
from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_gateway_request, token_fetches

logger = get_logger(__name__)

TokenFetcher = Callable[[], Awaitable[Tuple[str, int]]]


class AccessTokenCache:
    """
    Access token holder with expiry and a single-flight guard.

    Construct one per process and hand it to the client. When the token is
    missing or about to expire, the first caller fetches while concurrent
    callers wait on the lock and then read the fresh value.
    """

    def __init__(
        self,
        refresh_margin_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self._refresh_margin:
            return self._token
        return None

    def set(self, token: str, expires_in: int) -> None:
        self._token = token
        self._expires_at = self._clock() + expires_in

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_or_fetch(self, fetch: TokenFetcher) -> str:
        cached = self.peek()
        if cached:
            return cached

        async with self._lock:
            # Another waiter may have refreshed while we queued.
            cached = self.peek()
            if cached:
                return cached
            token, expires_in = await fetch()
            self.set(token, expires_in)
            return token


class VippsClient:
    """HTTP client for the Vipps ePayment API."""

    def __init__(
        self,
        *,
        api_base: str,
        client_id: str,
        client_secret: str,
        subscription_key: str,
        merchant_serial_number: str,
        token_cache: AccessTokenCache,
        timeout: float = 10.0,
        max_retries: int = 2,
        currency: str = "NOK",
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._subscription_key = subscription_key
        self._merchant_serial_number = merchant_serial_number
        self._token_cache = token_cache
        self._max_retries = max(0, max_retries)
        self._currency = currency
        self.http = http or httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            timeout=httpx.Timeout(timeout),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_cache: AccessTokenCache,
        http: Optional[httpx.AsyncClient] = None,
    ) -> "VippsClient":
        return cls(
            api_base=settings.VIPPS_API_BASE,
            client_id=settings.VIPPS_CLIENT_ID,
            client_secret=settings.VIPPS_CLIENT_SECRET,
            subscription_key=settings.VIPPS_SUBSCRIPTION_KEY,
            merchant_serial_number=settings.VIPPS_MERCHANT_SERIAL_NUMBER,
            token_cache=token_cache,
            timeout=settings.VIPPS_TIMEOUT_SECONDS,
            max_retries=settings.VIPPS_MAX_RETRIES,
            currency=settings.PAYMENT_CURRENCY,
            http=http,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def create_payment(
        self,
        reference: str,
        amount: int,
        return_url: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> str:
        """Create a WEB_REDIRECT wallet payment and return the redirect URL."""
        body = {
            "amount": {"currency": currency or self._currency, "value": amount},
            "paymentMethod": {"type": "WALLET"},
            "reference": reference,
            "userFlow": "WEB_REDIRECT",
            "returnUrl": return_url,
            "paymentDescription": description or f"Ticket {reference}",
        }
        data = await self._request(
            "create_payment",
            "POST",
            "/epayment/v1/payments",
            idempotency_key=reference,
            json_body=body,
        )
        redirect_url = data.get("redirectUrl")
        if not redirect_url:
            raise GatewayUnavailable("Gateway response missing redirectUrl", reference=reference)

        logger.info("payment_created", reference=reference, amount=amount)
        return redirect_url

    async def refund(self, reference: str, amount: int, currency: Optional[str] = None) -> None:
        body = {"modificationAmount": {"currency": currency or self._currency, "value": amount}}
        await self._request(
            "refund",
            "POST",
            f"/epayment/v1/payments/{reference}/refund",
            idempotency_key=f"refund-{reference}",
            json_body=body,
        )
        logger.info("refund_issued", reference=reference, amount=amount)

    async def _access_token(self) -> str:
        return await self._token_cache.get_or_fetch(self._fetch_token)

    async def _fetch_token(self) -> Tuple[str, int]:
        token_fetches.inc()
        started = time.perf_counter()
        try:
            response = await self.http.post(
                "/accesstoken/get",
                headers={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "Ocp-Apim-Subscription-Key": self._subscription_key,
                    "Merchant-Serial-Number": self._merchant_serial_number,
                },
            )
        except httpx.HTTPError as exc:
            record_gateway_request("token", "error", time.perf_counter() - started)
            raise GatewayUnavailable(f"Token request failed: {exc}") from exc

        record_gateway_request("token", str(response.status_code), time.perf_counter() - started)
        if response.status_code != 200:
            logger.error("vipps_token_error", status_code=response.status_code, body=response.text[:500])
            raise GatewayUnavailable(f"Token request returned {response.status_code}")

        try:
            data = response.json()
            # Vipps sends expires_in as a string.
            return data["access_token"], int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.error("vipps_token_malformed", body=response.text[:500])
            raise GatewayUnavailable(f"Malformed token response: {exc!r}") from exc

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        idempotency_key: str,
        json_body: dict[str, Any],
    ) -> dict[str, Any]:
        last_error = "no attempt made"

        for attempt in range(1, self._max_retries + 2):
            token = await self._access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Ocp-Apim-Subscription-Key": self._subscription_key,
                "Merchant-Serial-Number": self._merchant_serial_number,
                "Idempotency-Key": idempotency_key,
            }

            started = time.perf_counter()
            try:
                response = await self.http.request(method, path, headers=headers, json=json_body)
            except httpx.TimeoutException as exc:
                record_gateway_request(operation, "timeout", time.perf_counter() - started)
                last_error = f"timeout: {exc}"
                logger.warning("vipps_request_timeout", operation=operation, attempt=attempt)
                continue
            except httpx.TransportError as exc:
                record_gateway_request(operation, "transport_error", time.perf_counter() - started)
                last_error = f"transport error: {exc}"
                logger.warning("vipps_request_transport_error", operation=operation, attempt=attempt, error=str(exc))
                continue
            except httpx.HTTPError as exc:
                record_gateway_request(operation, "error", time.perf_counter() - started)
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("vipps_request_error", operation=operation, attempt=attempt, error=last_error)
                continue

            record_gateway_request(operation, str(response.status_code), time.perf_counter() - started)

            if response.status_code == 401:
                self._token_cache.invalidate()
                last_error = "access token rejected"
                continue
            if response.status_code >= 500:
                last_error = f"gateway returned {response.status_code}"
                logger.warning(
                    "vipps_request_server_error",
                    operation=operation,
                    attempt=attempt,
                    status_code=response.status_code,
                )
                continue
            if response.status_code >= 400:
                logger.error(
                    "vipps_request_rejected",
                    operation=operation,
                    status_code=response.status_code,
                    body=response.text[:500],
                )
                raise PaymentRejected(
                    f"Gateway rejected {operation} ({response.status_code})",
                    status=response.status_code,
                )

            try:
                data = response.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}

        raise GatewayUnavailable(f"{operation} failed: {last_error}", idempotency_key=idempotency_key)
