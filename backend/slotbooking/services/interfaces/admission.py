"""
Admission control strategy interface.
Allows swapping between different concurrency control approaches.
"""

from abc import ABC, abstractmethod


class AdmissionStrategy(ABC):
    """
    Interface for admission control strategies.

    Admission is advisory: a rejected request is reported as sold out
    without touching the database, an admitted one still has to win the
    conditional UPDATE on the timeslot row.

    Implementations:
    - OptimisticAdmission: No pre-check, the DB decides
    - RedisAdmission: Fast fail in Redis before the DB
    """

    @abstractmethod
    async def admit(self, timeslot_id: int) -> bool:
        """
        Check if a reservation request should proceed to the database.

        Returns:
            True if admitted (proceed to DB)
            False if rejected (fail fast)
        """

    @abstractmethod
    async def sync(self, timeslot_id: int, remaining: int) -> None:
        """
        Overwrite the gate's view of a timeslot with the DB value.

        Called after every committed capacity change.
        """
