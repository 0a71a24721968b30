# /chatflow/utils/locks.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

from chatflow.config.settings import settings

# Serializes routing per customer: two inbound messages from the same customer
# never run the router concurrently. In-process locks are enough for a single
# worker; multi-worker deployments use a Redis lock so the guarantee holds
# across processes.

logger = logging.getLogger(__name__)


class SessionLockManager:
    def __init__(self, redis_client: Optional[redis.Redis] = None, timeout: Optional[int] = None):
        self.redis = redis_client
        self.timeout = timeout or settings.session_lock_timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @staticmethod
    def key_for(organization_id: str, customer_id: str) -> str:
        return f"chatflow:lock:{organization_id}:{customer_id}"

    @asynccontextmanager
    async def hold(self, organization_id: str, customer_id: str) -> AsyncIterator[None]:
        key = self.key_for(organization_id, customer_id)
        if self.redis is not None:
            async with self.redis.lock(key, timeout=self.timeout, blocking_timeout=self.timeout):
                yield
            return

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Drop idle locks so the map does not grow with every customer seen
                del self._waiters[key]
                self._locks.pop(key, None)


def build_lock_manager() -> SessionLockManager:
    if settings.use_redis_locks:
        logger.info("Using Redis locks for per-customer routing.")
        return SessionLockManager(redis.Redis.from_url(settings.redis_url))
    return SessionLockManager()
