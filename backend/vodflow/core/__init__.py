"""Core module for configuration and utilities."""

from vodflow.core.celery_app import celery_app
from vodflow.core.config import settings
from vodflow.core.database import Base, async_session_maker
from vodflow.core.redis import get_redis_client, redis_client

__all__ = [
    "celery_app",
    "settings",
    "Base",
    "async_session_maker",
    "get_redis_client",
    "redis_client",
]
