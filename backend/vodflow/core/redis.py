"""Redis connection configuration."""

import redis.asyncio as redis

from vodflow.core.config import settings

# Segment bytes are binary, so the cache client never decodes responses.
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=False)


async def get_redis_client() -> redis.Redis:
    """Get Redis client instance."""
    return redis_client
