"""
Admission strategy factory.
Configures which admission control strategy to use.
"""

from typing import Optional

from slotbooking.core.config import get_settings
from slotbooking.core.logging import get_logger
from slotbooking.infrastructure.redis_client import get_redis
from slotbooking.services.admission_service import RedisAdmission
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.interfaces.optimistic_admission import OptimisticAdmission

logger = get_logger(__name__)

_strategy: Optional[AdmissionStrategy] = None


async def get_admission() -> AdmissionStrategy:
    """
    Get the configured admission strategy.

    ADMISSION_STRATEGY=redis uses RedisAdmission when Redis is reachable;
    otherwise (or with the default "optimistic") no pre-check is done.
    Only a working Redis strategy is cached, so a Redis that comes up
    later is picked up on the next call.
    """
    global _strategy
    if _strategy is not None:
        return _strategy

    if get_settings().ADMISSION_STRATEGY == "redis":
        client = await get_redis()
        if client is not None:
            _strategy = RedisAdmission(client)
            return _strategy
        logger.warning("admission_redis_unavailable", fallback="optimistic")

    return OptimisticAdmission()


def reset_admission() -> None:
    global _strategy
    _strategy = None
