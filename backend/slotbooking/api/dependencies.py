"""
Shared request dependencies.

Long-lived clients are created once in the application lifespan and kept
on app.state; tests replace them through app.dependency_overrides.
"""

from fastapi import Request

from slotbooking.infrastructure.vipps_client import VippsClient
from slotbooking.services.interfaces.admission import AdmissionStrategy
from slotbooking.services.notification_service import NotificationDispatcher
from slotbooking.services.strategy_factory import get_admission


def get_payment_gateway(request: Request) -> VippsClient:
    return request.app.state.vipps_client


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


async def get_admission_strategy() -> AdmissionStrategy:
    return await get_admission()
