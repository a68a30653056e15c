"""
Locust Load Test Suite

Accounts live in the identity service, so tokens are minted here with the
shared SECRET_KEY for a range of seeded user ids. Seed the users and one
timeslot first and point the test at them:

  export SECRET_KEY=... LOCUST_TIMESLOT_ID=1 LOCUST_USER_IDS=1-500

Run scenarios:
  locust -f locustfile.py --tags contention  # Test overbooking
  locust -f locustfile.py --tags edge        # Test bad input
  locust -f locustfile.py                    # All tests
"""

import os
import random
from datetime import datetime, timedelta, timezone

import jwt
from locust import HttpUser, task, between, tag, events

SECRET_KEY = os.environ.get("SECRET_KEY", "super-secret-key-change-in-production")
TIMESLOT_ID = int(os.environ.get("LOCUST_TIMESLOT_ID", "1"))
_first, _last = os.environ.get("LOCUST_USER_IDS", "1-500").split("-")
USER_IDS = list(range(int(_first), int(_last) + 1))

# booking_id -> headers of the user who holds it
RESERVED = {}


def mint_token(user_id: int) -> str:
    return jwt.encode(
        {"sub": str(user_id), "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        SECRET_KEY,
        algorithm="HS256",
    )


def headers_for(user_id: int) -> dict:
    return {"Authorization": f"Bearer {mint_token(user_id)}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Contended timeslot: {TIMESLOT_ID}, users: {len(USER_IDS)}")
    print("=" * 60)


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    print("\nVerify after the run:")
    print(
        "  SELECT capacity - remaining, (SELECT COUNT(*) FROM bookings "
        f"WHERE timeslot_id = {TIMESLOT_ID} AND status <> 'cancelled') "
        f"FROM timeslots WHERE id = {TIMESLOT_ID};"
    )
    print("Both numbers must match and never exceed capacity.\n")


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - many users -> one small timeslot

    Run: locust -f locustfile.py --tags contention -u 300 -r 100 --run-time 30s
    """

    wait_time = between(0, 0.1)

    def on_start(self):
        self.user_id = random.choice(USER_IDS)
        self.headers = headers_for(self.user_id)

    @tag("contention")
    @task(10)
    def reserve(self):
        with self.client.post(
            "/api/v1/reserve",
            json={"timeslot_id": TIMESLOT_ID},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 200:
                RESERVED[resp.json()["booking_id"]] = self.headers
                resp.success()
            elif resp.status_code == 400 and resp.json().get("error") == "sold_out":
                resp.success()  # Expected: sold out
            elif resp.status_code == 503:
                resp.success()  # Gateway sandbox throttling; reservation rolled back
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("contention")
    @task(1)
    def cancel(self):
        """Cancellations put units back and keep the fight going."""
        if not RESERVED:
            return
        booking_id = random.choice(list(RESERVED))
        headers = RESERVED.pop(booking_id, None)
        if headers is None:
            return
        with self.client.post(
            "/api/v1/refund",
            json={"booking_id": booking_id},
            headers=headers,
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 400):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("contention")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 2: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """

    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = headers_for(random.choice(USER_IDS))

    @tag("edge")
    @task
    def unknown_timeslot(self):
        with self.client.post(
            "/api/v1/reserve",
            json={"timeslot_id": 999999},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 404:
                resp.success()
            else:
                resp.failure(f"Expected 404, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_timeslot_id(self):
        with self.client.post(
            "/api/v1/reserve",
            json={"timeslot_id": -5},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 422:
                resp.success()
            else:
                resp.failure(f"Expected 422, got {resp.status_code}")

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/reserve",
            data="not json at all",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code in [400, 422]:
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post(
            "/api/v1/reserve",
            json={"timeslot_id": TIMESLOT_ID},
            catch_response=True,
        ) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Expected 401, got {resp.status_code}")

    @tag("edge")
    @task
    def unsigned_webhook(self):
        with self.client.post(
            "/api/v1/webhook",
            json={"reference": "slot-unknown", "name": "AUTHORIZED"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Expected 401, got {resp.status_code}")
