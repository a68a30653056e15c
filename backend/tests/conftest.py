"""
Pytest fixtures for test database, client, gateway and authentication.

Each test gets its own SQLite file database, so concurrent sessions behave
like separate connections (SQLite serializes writers, which is enough to
exercise the conditional capacity UPDATE). The Vipps and Resend HTTP APIs
are replaced by httpx.MockTransport handlers that record every request.
"""

import json
import os

# Must be set before slotbooking is imported: settings are cached on first use.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./slotbooking-test-bootstrap.db"
os.environ["ENVIRONMENT"] = "test"
os.environ["VIPPS_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["REDIS_ENABLED"] = "false"
os.environ["ADMISSION_STRATEGY"] = "optimistic"

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slotbooking.main import app
from slotbooking.api.dependencies import get_admission_strategy, get_notifier, get_payment_gateway
from slotbooking.core.config import Settings
from slotbooking.core.security import create_access_token
from slotbooking.db.base import Base
from slotbooking.db.session import build_engine, get_db
from slotbooking.infrastructure.email_client import ResendEmailClient
from slotbooking.infrastructure.vipps_client import AccessTokenCache, VippsClient
from slotbooking.models import Event, Timeslot, User
from slotbooking.services.interfaces.optimistic_admission import OptimisticAdmission
from slotbooking.services.notification_service import NotificationDispatcher

WEBHOOK_SECRET = "test-webhook-secret"
VIPPS_BASE = "https://vipps.test"


class FakeVippsApi:
    """Stand-in for the Vipps ePayment API, used as an httpx.MockTransport handler."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body: bytes | None = None
        self.payment_status = 201
        self.refund_status = 200
        self.payment_error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/accesstoken/get":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            if self.token_body is not None:
                return httpx.Response(200, content=self.token_body)
            return httpx.Response(
                200,
                json={"token_type": "Bearer", "expires_in": "3600", "access_token": "vipps-access-token"},
            )

        if path == "/epayment/v1/payments":
            if self.payment_error is not None:
                raise self.payment_error
            body = json.loads(request.content)
            if self.payment_status >= 400:
                return httpx.Response(self.payment_status, json={"title": "error"})
            return httpx.Response(
                self.payment_status,
                json={
                    "reference": body["reference"],
                    "redirectUrl": f"https://pay.vipps.test/session/{body['reference']}",
                },
            )

        if path.endswith("/refund"):
            return httpx.Response(self.refund_status, json={})

        return httpx.Response(404)

    def calls(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]


class FakeEmailApi:
    def __init__(self):
        self.sent: list[dict] = []
        self.status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.status != 200:
            return httpx.Response(self.status, json={"message": "error"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": f"email-{len(self.sent)}"})


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh SQLite file database with the full schema."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def vipps_api() -> FakeVippsApi:
    return FakeVippsApi()


@pytest_asyncio.fixture
async def gateway(vipps_api) -> AsyncGenerator[VippsClient, None]:
    client = VippsClient(
        api_base=VIPPS_BASE,
        client_id="client-id",
        client_secret="client-secret",
        subscription_key="subscription-key",
        merchant_serial_number="123456",
        token_cache=AccessTokenCache(),
        max_retries=1,
        http=httpx.AsyncClient(base_url=VIPPS_BASE, transport=httpx.MockTransport(vipps_api)),
    )
    yield client
    await client.aclose()


@pytest.fixture
def email_api() -> FakeEmailApi:
    return FakeEmailApi()


@pytest_asyncio.fixture
async def notifier(session_factory, email_api) -> AsyncGenerator[NotificationDispatcher, None]:
    email_client = ResendEmailClient(
        Settings(RESEND_API_KEY="re_test_key"),
        http=httpx.AsyncClient(transport=httpx.MockTransport(email_api)),
    )
    yield NotificationDispatcher(session_factory, email_client)
    await email_client.aclose()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, notifier) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with DB, gateway, notifier and admission dependencies overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_admission_strategy] = OptimisticAdmission

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _create_user(db: AsyncSession, name: str, email: str | None) -> User:
    user = User(name=name, email=email)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def host(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "Hanne Host", "host@example.com")


@pytest_asyncio.fixture
async def buyer(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "Bjorn Buyer", "buyer@example.com")


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "Olga Other", "other@example.com")


@pytest_asyncio.fixture
async def make_users(db_session: AsyncSession):
    async def _make(count: int) -> list[User]:
        users = [User(name=f"User {i}", email=f"user{i}@example.com") for i in range(count)]
        db_session.add_all(users)
        await db_session.commit()
        return users

    return _make


@pytest_asyncio.fixture
async def test_event(db_session: AsyncSession, host: User) -> Event:
    event = Event(title="Jazz Night", host_id=host.id)
    db_session.add(event)
    await db_session.commit()
    await db_session.refresh(event)
    return event


@pytest_asyncio.fixture
async def make_timeslot(db_session: AsyncSession, test_event: Event):
    async def _make(
        price: int = 25000,
        capacity: int = 3,
        remaining: int | None = None,
        active: bool = True,
        starts_in: timedelta = timedelta(days=7),
        currency: str = "NOK",
    ) -> Timeslot:
        timeslot = Timeslot(
            event_id=test_event.id,
            starts_at=datetime.now(timezone.utc) + starts_in,
            price=price,
            currency=currency,
            capacity=capacity,
            remaining=capacity if remaining is None else remaining,
            active=active,
        )
        db_session.add(timeslot)
        await db_session.commit()
        await db_session.refresh(timeslot)
        return timeslot

    return _make


@pytest_asyncio.fixture
async def paid_timeslot(make_timeslot) -> Timeslot:
    """250 NOK, three places."""
    return await make_timeslot(price=25000, capacity=3)


@pytest_asyncio.fixture
async def free_timeslot(make_timeslot) -> Timeslot:
    return await make_timeslot(price=0, capacity=5)


def bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(user.id)})}"}


@pytest.fixture
def auth_headers(buyer: User) -> dict:
    return bearer(buyer)


@pytest.fixture
def host_headers(host: User) -> dict:
    return bearer(host)


@pytest.fixture
def other_headers(other_user: User) -> dict:
    return bearer(other_user)


@pytest.fixture
def send_webhook(client: AsyncClient):
    async def _send(reference: str, name: str, secret: str | None = WEBHOOK_SECRET, psp_reference: str = "psp-1"):
        headers = {"Authorization": secret} if secret is not None else {}
        return await client.post(
            "/api/v1/webhook",
            json={"reference": reference, "pspReference": psp_reference, "name": name},
            headers=headers,
        )

    return _send


@pytest.fixture
def reserve_paid(client: AsyncClient, paid_timeslot: Timeslot, auth_headers: dict):
    """POST /reserve for the buyer on the paid timeslot; returns the JSON body."""

    async def _reserve(timeslot: Timeslot | None = None, headers: dict | None = None) -> dict:
        response = await client.post(
            "/api/v1/reserve",
            json={"timeslot_id": (timeslot or paid_timeslot).id},
            headers=headers or auth_headers,
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _reserve


@pytest.fixture
def confirmed_booking(reserve_paid, send_webhook):
    """A paid booking that the gateway has authorized."""

    async def _confirm() -> dict:
        reservation = await reserve_paid()
        response = await send_webhook(reservation["vipps_reference"], "AUTHORIZED")
        assert response.status_code == 200
        return reservation

    return _confirm
