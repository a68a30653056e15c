"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from slotbooking.api.routes import payments, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
