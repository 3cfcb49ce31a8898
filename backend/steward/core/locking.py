"""Distributed job locks using Redis.

Keeps two sweep invocations (cron overlap, or cron plus an admin "run now")
from working the same subscriptions at once. Locks expire on their own so a
crashed worker never blocks the next run.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog

from steward.db.redis import get_redis

logger = structlog.get_logger(__name__)


class JobLock:
    """Manages named job locks in Redis."""

    LOCK_PREFIX = "steward:lock:"
    DEFAULT_TTL = 300

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    def _redis(self) -> redis.Redis:
        return self._client if self._client is not None else get_redis()

    def _lock_key(self, name: str) -> str:
        return f"{self.LOCK_PREFIX}{name}"

    async def acquire(self, name: str, owner: str, ttl: int | None = None) -> bool:
        """Attempt to acquire a lock.

        Args:
            name: Job name, e.g. "billing-sweep"
            owner: Identifier of the lock owner (run id)
            ttl: Lock time-to-live in seconds

        Returns:
            True if acquired (or already held by this owner), False otherwise
        """
        r = self._redis()
        key = self._lock_key(name)
        ttl = ttl or self.DEFAULT_TTL

        lock_value = f"{owner}|{datetime.now(UTC).isoformat()}"
        if await r.set(key, lock_value, nx=True, ex=ttl):
            return True

        current = await r.get(key)
        if current and current.startswith(f"{owner}|"):
            await r.expire(key, ttl)
            return True

        return False

    async def release(self, name: str, owner: str) -> bool:
        """Release a lock if this owner holds it."""
        r = self._redis()
        key = self._lock_key(name)

        current = await r.get(key)
        if current and current.startswith(f"{owner}|"):
            await r.delete(key)
            return True

        return False

    async def holder(self, name: str) -> dict | None:
        """Return the current holder and remaining TTL, or None when free."""
        r = self._redis()
        key = self._lock_key(name)

        current = await r.get(key)
        if not current:
            return None

        owner, _, locked_at = current.partition("|")
        return {"name": name, "owner": owner, "locked_at": locked_at or None, "expires_in": await r.ttl(key)}

    @asynccontextmanager
    async def lock(self, name: str, owner: str, ttl: int | None = None) -> AsyncGenerator[bool, None]:
        """Context manager that yields whether the lock was acquired.

        Example:
            async with job_lock.lock("billing-sweep", run_id) as acquired:
                if not acquired:
                    return
        """
        acquired = await self.acquire(name, owner, ttl)
        if not acquired:
            logger.info("job_lock_busy", name=name, owner=owner)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(name, owner)
