"""
Tests for cancellation, refunds and the refund retry queue.
"""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy import event

from slotbooking.domain.state_machine import BookingStatus, RefundStatus, TransactionStatus
from slotbooking.models import Booking
from slotbooking.services.cancellation_service import cancel_booking, retry_failed_refunds

from helpers import active_bookings, booking, refund_request, remaining, transaction


@pytest.mark.asyncio
async def test_cancel_confirmed_booking_refunds(client: AsyncClient, auth_headers, confirmed_booking, db_session, paid_timeslot, vipps_api):
    reservation = await confirmed_booking()
    reference = reservation["vipps_reference"]
    assert await remaining(db_session, paid_timeslot.id) == 2

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "status": "success",
        "booking_id": reservation["booking_id"],
        "refund_needed": True,
        "refunded": True,
    }
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CANCELLED
    assert await remaining(db_session, paid_timeslot.id) == 3

    [refund_call] = vipps_api.calls("/refund")
    assert refund_call.url.path == f"/epayment/v1/payments/{reference}/refund"
    assert refund_call.headers["Idempotency-Key"] == f"refund-{reference}"
    assert json.loads(refund_call.content)["modificationAmount"] == {"currency": "NOK", "value": 25000}

    refund = await refund_request(db_session, reference)
    assert refund.status == RefundStatus.SUCCEEDED
    assert refund.attempts == 1
    # The payment itself stays confirmed; the refund is tracked separately.
    assert (await transaction(db_session, reference)).status == TransactionStatus.CONFIRMED


@pytest.mark.asyncio
async def test_failed_refund_is_queued_and_retried(client: AsyncClient, auth_headers, confirmed_booking, db_session, paid_timeslot, vipps_api, gateway):
    reservation = await confirmed_booking()
    reference = reservation["vipps_reference"]
    vipps_api.refund_status = 503

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    # Cancellation stands even though the gateway failed.
    assert response.status_code == 200
    assert response.json()["refund_needed"] is True
    assert response.json()["refunded"] is False
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CANCELLED
    assert await remaining(db_session, paid_timeslot.id) == 3

    refund = await refund_request(db_session, reference)
    assert refund.status == RefundStatus.FAILED
    assert refund.attempts == 1
    assert "503" in refund.last_error

    vipps_api.refund_status = 200
    succeeded, failed = await retry_failed_refunds(db_session, gateway, max_attempts=5)

    assert (succeeded, failed) == (1, 0)
    refund = await refund_request(db_session, reference)
    assert refund.status == RefundStatus.SUCCEEDED
    assert refund.attempts == 2
    assert refund.last_error is None
    keys = {r.headers["Idempotency-Key"] for r in vipps_api.calls("/refund")}
    assert keys == {f"refund-{reference}"}


@pytest.mark.asyncio
async def test_retry_skips_refunds_over_attempt_ceiling(client: AsyncClient, auth_headers, confirmed_booking, db_session, vipps_api, gateway):
    reservation = await confirmed_booking()
    vipps_api.refund_status = 500
    await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)
    calls_before = len(vipps_api.calls("/refund"))

    assert await retry_failed_refunds(db_session, gateway, max_attempts=1) == (0, 0)
    assert len(vipps_api.calls("/refund")) == calls_before


@pytest.mark.asyncio
async def test_refunded_webhook_marks_refund_succeeded(client: AsyncClient, auth_headers, confirmed_booking, send_webhook, db_session, vipps_api):
    reservation = await confirmed_booking()
    reference = reservation["vipps_reference"]
    vipps_api.refund_status = 502
    await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    response = await send_webhook(reference, "REFUNDED")

    assert response.json()["outcome"] == "applied"
    assert (await refund_request(db_session, reference)).status == RefundStatus.SUCCEEDED

    again = await send_webhook(reference, "REFUNDED")
    assert again.json()["outcome"] == "noop"


@pytest.mark.asyncio
async def test_cancel_pending_booking_cancels_payment(client: AsyncClient, auth_headers, reserve_paid, send_webhook, db_session, paid_timeslot, vipps_api):
    reservation = await reserve_paid()
    reference = reservation["vipps_reference"]

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["refund_needed"] is False
    assert (await transaction(db_session, reference)).status == TransactionStatus.CANCELLED
    assert await remaining(db_session, paid_timeslot.id) == 3
    assert vipps_api.calls("/refund") == []

    # A late authorization must not resurrect the booking.
    late = await send_webhook(reference, "AUTHORIZED")
    assert late.status_code == 200
    assert late.json()["outcome"] == "noop"
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CANCELLED
    assert await remaining(db_session, paid_timeslot.id) == 3


@pytest.mark.asyncio
async def test_cancel_free_booking(client: AsyncClient, auth_headers, free_timeslot, db_session, vipps_api):
    reserved = await client.post("/api/v1/reserve", json={"timeslot_id": free_timeslot.id}, headers=auth_headers)
    booking_id = reserved.json()["booking_id"]

    response = await client.post("/api/v1/refund", json={"booking_id": booking_id}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["refund_needed"] is False
    assert response.json()["refunded"] is False
    assert await remaining(db_session, free_timeslot.id) == 5
    assert vipps_api.requests == []


@pytest.mark.asyncio
async def test_double_cancel_rejected(client: AsyncClient, auth_headers, confirmed_booking, db_session, paid_timeslot, vipps_api):
    reservation = await confirmed_booking()
    await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "already_cancelled"
    assert await remaining(db_session, paid_timeslot.id) == 3
    assert len(vipps_api.calls("/refund")) == 1


@pytest.mark.asyncio
async def test_other_user_cannot_cancel(client: AsyncClient, other_headers, confirmed_booking, db_session, paid_timeslot):
    reservation = await confirmed_booking()

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=other_headers)

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CONFIRMED
    assert await active_bookings(db_session, paid_timeslot.id) == 1


@pytest.mark.asyncio
async def test_host_can_cancel(client: AsyncClient, host_headers, confirmed_booking, db_session, email_api):
    reservation = await confirmed_booking()

    response = await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=host_headers)

    assert response.status_code == 200
    assert response.json()["refunded"] is True
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CANCELLED
    # The ticket holder is told, not the host.
    assert email_api.sent[-1]["to"] == ["buyer@example.com"]
    assert email_api.sent[-1]["subject"] == "Booking cancelled: Jazz Night"


@pytest.mark.asyncio
async def test_cancel_unknown_booking(client: AsyncClient, auth_headers, buyer):
    response = await client.post("/api/v1/refund", json={"booking_id": 4242}, headers=auth_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_requires_auth(client: AsyncClient):
    response = await client.post("/api/v1/refund", json={"booking_id": 1})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cancelled_unit_can_be_rebooked(client: AsyncClient, auth_headers, other_headers, make_timeslot, db_session):
    timeslot = await make_timeslot(price=0, capacity=1)
    first = await client.post("/api/v1/reserve", json={"timeslot_id": timeslot.id}, headers=auth_headers)
    sold_out = await client.post("/api/v1/reserve", json={"timeslot_id": timeslot.id}, headers=other_headers)
    assert sold_out.status_code == 400

    await client.post("/api/v1/refund", json={"booking_id": first.json()["booking_id"]}, headers=auth_headers)
    second = await client.post("/api/v1/reserve", json={"timeslot_id": timeslot.id}, headers=other_headers)

    assert second.status_code == 200
    assert await remaining(db_session, timeslot.id) == 0


@pytest.mark.asyncio
async def test_refund_uses_transaction_currency(client: AsyncClient, auth_headers, make_timeslot, reserve_paid, send_webhook, vipps_api, gateway, db_session):
    timeslot = await make_timeslot(price=1500, currency="EUR")
    reservation = await reserve_paid(timeslot=timeslot)
    await send_webhook(reservation["vipps_reference"], "AUTHORIZED")

    await client.post("/api/v1/refund", json={"booking_id": reservation["booking_id"]}, headers=auth_headers)

    [refund_call] = vipps_api.calls("/refund")
    assert json.loads(refund_call.content)["modificationAmount"] == {"currency": "EUR", "value": 1500}

    # Retries read the currency from the stored refund request.
    assert (await refund_request(db_session, reservation["vipps_reference"])).currency == "EUR"


@pytest.mark.asyncio
async def test_cancel_locks_transaction_before_booking(engine, session_factory, reserve_paid, buyer, gateway):
    """Cancellation takes rows in the same order as webhook reconciliation."""
    reservation = await reserve_paid()
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(" ".join(statement.split()))

    event.listen(engine.sync_engine, "before_cursor_execute", record)
    try:
        async with session_factory() as db:
            result = await cancel_booking(db, reservation["booking_id"], buyer.id, gateway=gateway)
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", record)

    assert result.refund_needed is False
    transaction_read = next(i for i, s in enumerate(statements) if s.startswith("SELECT") and "FROM transactions" in s)
    booking_write = next(i for i, s in enumerate(statements) if s.startswith("UPDATE bookings"))
    transaction_write = next(i for i, s in enumerate(statements) if s.startswith("UPDATE transactions"))
    assert transaction_read < booking_write < transaction_write


@pytest.mark.asyncio
async def test_cancel_after_authorization_sees_confirmed_payment(session_factory, reserve_paid, send_webhook, buyer, gateway, db_session, vipps_api):
    """A booking loaded before the webhook landed is re-read under the lock."""
    reservation = await reserve_paid()

    async with session_factory() as db:
        stale = await db.get(Booking, reservation["booking_id"])
        assert stale.status == BookingStatus.PENDING_PAYMENT
        await db.commit()

        await send_webhook(reservation["vipps_reference"], "AUTHORIZED")
        result = await cancel_booking(db, reservation["booking_id"], buyer.id, gateway=gateway)

    assert result.refund_needed is True
    assert result.refunded is True
    assert (await booking(db_session, reservation["booking_id"])).status == BookingStatus.CANCELLED
    assert len(vipps_api.calls("/refund")) == 1
