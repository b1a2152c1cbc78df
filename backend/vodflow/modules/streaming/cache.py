"""Redis cache for manifests and segments.

The cache fails open: any Redis error is logged, counted and reported as a
miss so that readers fall through to the signed-URL path.
"""

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from vodflow.core.config import settings
from vodflow.core.metrics import CACHE_LOOKUPS_TOTAL

logger = logging.getLogger(__name__)


def cache_key(stream_format: str, object_key: str) -> str:
    return f"{stream_format}:{object_key}"


class SegmentCache:
    """Cache-aside store keyed by ``{format}:{object key}``."""

    def __init__(self, client: Redis, ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CACHE_TTL_SECONDS

    async def get(self, stream_format: str, object_key: str) -> Optional[bytes]:
        key = cache_key(stream_format, object_key)
        try:
            data = await self.client.get(key)
        except RedisError as e:
            CACHE_LOOKUPS_TOTAL.labels(format=stream_format, result="error").inc()
            logger.warning("Cache lookup failed", extra={"cache_key": key, "error": str(e)})
            return None

        CACHE_LOOKUPS_TOTAL.labels(
            format=stream_format, result="hit" if data is not None else "miss"
        ).inc()
        return data

    async def set(self, stream_format: str, object_key: str, data: bytes) -> bool:
        key = cache_key(stream_format, object_key)
        try:
            if self.ttl_seconds > 0:
                await self.client.set(key, data, ex=self.ttl_seconds)
            else:
                await self.client.set(key, data)
            return True
        except RedisError as e:
            logger.warning("Cache write failed", extra={"cache_key": key, "error": str(e)})
            return False
