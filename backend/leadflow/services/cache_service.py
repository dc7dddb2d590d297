# /leadflow/services/cache_service.py

import logging
from typing import Optional
import redis.asyncio as redis

from leadflow.config.settings import settings

# Owns the shared Redis client used for inbound-message dedup and for the
# cross-process conversation locks.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
        except Exception as e:
            logger.critical(f"Failed to configure Redis at {redis_url}: {e}")
            self.redis = None

    async def claim_once(self, key: str, ttl: int) -> bool:
        """
        Claims `key` for `ttl` seconds. Returns False if it was already claimed.
        When Redis is unreachable the claim succeeds so messages are never lost.
        """
        if not self.redis:
            return True
        try:
            return bool(await self.redis.set(key, "1", ex=ttl, nx=True))
        except Exception as e:
            logger.warning(f"Redis claim failed for key {key}: {e}")
            return True

    async def is_duplicate_message(self, message_id: str, phone_number: str) -> bool:
        """True if this provider message id was already processed recently."""
        return not await self.claim_once(
            f"processed:{phone_number}:{message_id}", settings.inbound_dedup_window_seconds
        )

    async def health_check(self) -> bool:
        if not self.redis:
            return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
