"""
Optimistic admission strategy - no pre-check.
Relies entirely on the conditional capacity UPDATE in the database.
"""

from slotbooking.services.interfaces.admission import AdmissionStrategy


class OptimisticAdmission(AdmissionStrategy):
    """
    No admission control - always admit.

    Use when:
    - <100 concurrent users per timeslot
    - Normal load scenarios
    - Simplicity preferred over fail-fast
    """

    async def admit(self, timeslot_id: int) -> bool:
        return True

    async def sync(self, timeslot_id: int, remaining: int) -> None:
        pass
