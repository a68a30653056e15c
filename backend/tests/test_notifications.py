"""
Tests for notification preferences, composition and delivery.
"""

import httpx
import pytest

from slotbooking.core.config import Settings
from slotbooking.infrastructure.email_client import EmailMessage, ResendEmailClient
from slotbooking.models import NotificationPreference, User
from slotbooking.services.notification_service import NotificationDispatcher, compose


@pytest.mark.asyncio
async def test_sends_when_no_preferences_stored(notifier, buyer, test_event, email_api):
    result = await notifier.notify(buyer.id, "booking_confirmed", test_event.id)

    assert result == "sent"
    [email] = email_api.sent
    assert email["to"] == ["buyer@example.com"]
    assert email["from"] == Settings().FROM_EMAIL
    assert "Jazz Night" in email["html"]


@pytest.mark.asyncio
async def test_respects_opt_out(notifier, db_session, buyer, test_event, email_api):
    db_session.add(NotificationPreference(user_id=buyer.id, email_booking=False))
    await db_session.commit()

    assert await notifier.notify(buyer.id, "booking_confirmed", test_event.id) == "opted_out"
    assert email_api.sent == []
    # Other types still go out.
    assert await notifier.notify(buyer.id, "comment", test_event.id, actor_id=test_event.host_id, message="See you!") == "sent"


@pytest.mark.asyncio
async def test_waitlist_promotion_follows_rsvp_preference(notifier, db_session, buyer, test_event, email_api):
    db_session.add(NotificationPreference(user_id=buyer.id, email_rsvp=False))
    await db_session.commit()

    assert await notifier.notify(buyer.id, "waitlist_promoted", test_event.id) == "opted_out"
    assert email_api.sent == []


@pytest.mark.asyncio
async def test_user_without_email_is_skipped(notifier, db_session, test_event, email_api):
    user = User(name="No Mail", email=None)
    db_session.add(user)
    await db_session.commit()

    assert await notifier.notify(user.id, "booking_confirmed", test_event.id) == "no_email"
    assert email_api.sent == []


@pytest.mark.asyncio
async def test_unknown_type_is_dropped(notifier, buyer, email_api):
    assert await notifier.notify(buyer.id, "birthday", None) == "unknown_type"
    assert email_api.sent == []


@pytest.mark.asyncio
async def test_delivery_failure_never_raises(notifier, buyer, test_event, email_api):
    email_api.status = 500
    assert await notifier.notify(buyer.id, "booking_cancelled", test_event.id) == "failed"


@pytest.mark.asyncio
async def test_missing_event_uses_placeholder(notifier, buyer, email_api):
    await notifier.notify(buyer.id, "invitation", 9999, actor_id=9999)
    [email] = email_api.sent
    assert email["subject"] == "You are invited to an event"
    assert "Someone" in email["html"]


@pytest.mark.asyncio
async def test_email_client_without_key_makes_no_request():
    requests = []
    client = ResendEmailClient(
        Settings(RESEND_API_KEY=""),
        http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: requests.append(r) or httpx.Response(200))),
    )
    try:
        assert not client.enabled
        await client.send(EmailMessage(to="a@example.com", subject="Hi", html="<p>Hi</p>"))
    finally:
        await client.aclose()

    assert requests == []


@pytest.mark.asyncio
async def test_email_client_sends_bearer_key():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "email-1"})

    client = ResendEmailClient(
        Settings(RESEND_API_KEY="re_abc"),
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    try:
        await client.send(EmailMessage(to="a@example.com", subject="Hi", html="<p>Hi</p>"))
    finally:
        await client.aclose()

    [request] = requests
    assert str(request.url) == Settings().RESEND_API_URL
    assert request.headers["Authorization"] == "Bearer re_abc"


def test_compose_escapes_html():
    subject, html = compose("comment", "<b>Gig</b>", "Eve <script>", "<img src=x>")
    assert subject == "Eve <script> commented on <b>Gig</b>"
    assert "<script>" not in html
    assert "&lt;img src=x&gt;" in html


def test_compose_unknown_type():
    with pytest.raises(ValueError):
        compose("birthday", "Gig", "Eve")


@pytest.mark.asyncio
async def test_dispatcher_uses_its_own_session(session_factory, buyer, test_event):
    sent = []

    class RecordingClient:
        async def send(self, message):
            sent.append(message)

    dispatcher = NotificationDispatcher(session_factory, RecordingClient())
    assert await dispatcher.notify(buyer.id, "reminder", test_event.id) == "sent"
    assert sent[0].subject == "Reminder: Jazz Night starts tomorrow"
