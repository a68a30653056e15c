"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .redis_client import get_redis, close_redis, get_redis_status
from .vipps_client import AccessTokenCache, VippsClient
from .email_client import EmailMessage, ResendEmailClient

__all__ = [
    'get_redis', 'close_redis', 'get_redis_status',
    'AccessTokenCache', 'VippsClient',
    'EmailMessage', 'ResendEmailClient',
]
