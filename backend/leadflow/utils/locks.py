# /leadflow/utils/locks.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from redis.exceptions import LockError, RedisError

from leadflow.config.settings import settings
from leadflow.services.cache_service import cache_service
from leadflow.utils.metrics import lock_operations_counter

# Serialises all work on one (business number, customer) conversation: engine
# turns, follow-up resumes and sweep actions. The Redis lock is shared by every
# API worker and the scheduler process; the in-process asyncio.Lock is used
# when Redis cannot be reached.

logger = logging.getLogger(__name__)


class ConversationLockTimeout(Exception):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Timed out waiting for conversation lock {key}")


class ConversationLocks:
    def __init__(self, redis_client=None, timeout_seconds: int = 180, wait_seconds: int = 150):
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.wait_seconds = wait_seconds
        self._local: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @staticmethod
    def key_for(business_number_id: str, customer_phone: str) -> str:
        return f"conversation_lock:{business_number_id}:{customer_phone}"

    @asynccontextmanager
    async def hold(self, business_number_id: str, customer_phone: str):
        """
        Holds the conversation lock for the body of the `async with` block.
        Raises ConversationLockTimeout if it cannot be acquired in time.
        """
        key = self.key_for(business_number_id, customer_phone)

        redis_lock = await self._acquire_redis(key)
        if redis_lock is not None:
            try:
                yield
            finally:
                try:
                    await redis_lock.release()
                except LockError:
                    logger.warning(f"Conversation lock {key} expired before release.")
            return

        async with self._hold_local(key):
            yield

    async def _acquire_redis(self, key: str):
        if self.redis is None:
            return None
        lock = self.redis.lock(key, timeout=self.timeout_seconds, blocking_timeout=self.wait_seconds)
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.warning(f"Redis lock unavailable for {key}, using in-process lock: {e}")
            lock_operations_counter.labels(backend="redis", status="unavailable").inc()
            return None
        if not acquired:
            lock_operations_counter.labels(backend="redis", status="timeout").inc()
            raise ConversationLockTimeout(key)
        lock_operations_counter.labels(backend="redis", status="acquired").inc()
        return lock

    @asynccontextmanager
    async def _hold_local(self, key: str):
        lock = self._local.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError:
                lock_operations_counter.labels(backend="local", status="timeout").inc()
                raise ConversationLockTimeout(key)
            lock_operations_counter.labels(backend="local", status="acquired").inc()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._local.pop(key, None)


def build_conversation_locks(redis_client: Optional[object] = None) -> ConversationLocks:
    return ConversationLocks(
        redis_client,
        timeout_seconds=settings.conversation_lock_timeout_seconds,
        wait_seconds=settings.conversation_lock_wait_seconds,
    )


# Globally accessible instance
conversation_locks = build_conversation_locks(cache_service.redis)
