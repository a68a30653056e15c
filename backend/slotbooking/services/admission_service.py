"""
Admission control for high-contention timeslots, backed by Redis.

Circuit Breaker Pattern:
  On Redis failure, the gate "fails open" (admits all requests).
  A Redis outage must never block reservations.
  Database remains authoritative - Redis is advisory only.

  The counter is re-synced from the DB after every committed capacity
  change and carries a TTL, so drift from a failed sync heals on its own.
"""

from pathlib import Path
from typing import Optional

import redis.asyncio as redis

from slotbooking.core.config import get_settings
from slotbooking.core.logging import get_logger
from slotbooking.core.metrics import record_admission, redis_circuit_breaker_open, redis_connection_errors
from slotbooking.services.interfaces.admission import AdmissionStrategy

logger = get_logger(__name__)

ADMISSION_SCRIPT = (Path(__file__).resolve().parent.parent / "infrastructure" / "admission_lua.lua").read_text()

UNKNOWN = -1
REJECTED = 0


def remaining_key(timeslot_id: int) -> str:
    return f"remaining:{timeslot_id}"


class RedisAdmission(AdmissionStrategy):
    """
    Redis-based admission control.

    Use when:
    - 1000+ concurrent users per timeslot
    - Ticket drops where most requests are going to lose anyway
    - Need to protect database from overload
    """

    def __init__(self, client: redis.Redis, ttl_seconds: Optional[int] = None):
        self.redis = client
        self.script = client.register_script(ADMISSION_SCRIPT)
        self.ttl_seconds = ttl_seconds or get_settings().ADMISSION_TTL_SECONDS

    async def admit(self, timeslot_id: int) -> bool:
        try:
            result = int(await self.script(keys=[remaining_key(timeslot_id)], args=[]))
        except redis.RedisError as e:
            redis_connection_errors.inc()
            redis_circuit_breaker_open.set(1)
            logger.warning("admission_gate_failing_open", timeslot_id=timeslot_id, error=str(e))
            record_admission(True)
            return True

        redis_circuit_breaker_open.set(0)
        admitted = result != REJECTED
        record_admission(admitted)
        if not admitted:
            logger.info("admission_rejected", timeslot_id=timeslot_id)
        return admitted

    async def sync(self, timeslot_id: int, remaining: int) -> None:
        try:
            await self.redis.set(remaining_key(timeslot_id), remaining, ex=self.ttl_seconds)
        except redis.RedisError as e:
            redis_connection_errors.inc()
            logger.warning("admission_sync_failed", timeslot_id=timeslot_id, error=str(e))
