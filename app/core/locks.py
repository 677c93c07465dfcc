"""
Per-lesson generation locks kept in Redis, or in process memory when Redis is not configured
"""
from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple
import time

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import Settings, get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Delete only when the caller still owns the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lesson_lock_key(lesson_id: int, job_type: str) -> str:
    return f"lock:lesson:{lesson_id}:{job_type}"


class _MemoryLocks:
    def __init__(self, clock: Callable[[], float]):
        self._held: Dict[str, Tuple[float, str]] = {}
        self._clock = clock

    def holder(self, key: str) -> Optional[str]:
        entry = self._held.get(key)
        if entry is None:
            return None
        expires_at, owner = entry
        if expires_at <= self._clock():
            del self._held[key]
            return None
        return owner

    def acquire(self, key: str, owner: str, ttl: int) -> bool:
        if self.holder(key) is not None:
            return False
        self._held[key] = (self._clock() + ttl, owner)
        return True

    def release(self, key: str, owner: str) -> bool:
        if self.holder(key) != owner:
            return False
        del self._held[key]
        return True


class LessonLockStore:
    """
    Mutual exclusion for jobs writing the same lesson collection.

    Locks expire after their TTL so a crashed worker cannot hold a lesson
    forever. A lock is only released by the job that took it. When Redis
    is unreachable, acquiring fails and the job is skipped.
    """

    def __init__(self, redis_url: Optional[str], default_ttl: int = 900,
                 clock: Callable[[], float] = time.time):
        self._client: Optional[Redis] = None
        self._memory = _MemoryLocks(clock)
        self._default_ttl = default_ttl
        if redis_url:
            self._client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
            logger.info("Redis lock store initialized")
        else:
            logger.warning("REDIS_URL not configured, generation locks are process-local")

    @property
    def is_shared(self) -> bool:
        return self._client is not None

    async def acquire(self, key: str, owner: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl = max(1, int(ttl_seconds or self._default_ttl))
        if self._client is None:
            return self._memory.acquire(key, owner, ttl)
        try:
            return bool(await self._client.set(key, owner, ex=ttl, nx=True))
        except RedisError as e:
            logger.error("Lock acquire failed", key=key, error=str(e))
            return False

    async def release(self, key: str, owner: str) -> bool:
        if self._client is None:
            return self._memory.release(key, owner)
        try:
            return bool(await self._client.eval(_RELEASE_SCRIPT, 1, key, owner))
        except RedisError as e:
            logger.error("Lock release failed", key=key, owner=owner, error=str(e))
            return False

    async def holder(self, key: str) -> Optional[str]:
        if self._client is None:
            return self._memory.holder(key)
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.error("Lock lookup failed", key=key, error=str(e))
            return None

    async def ping(self) -> bool:
        if self._client is None:
            return True
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


_lock_store: Optional[LessonLockStore] = None


def get_lock_store(settings: Optional[Settings] = None) -> LessonLockStore:
    global _lock_store
    if _lock_store is None:
        settings = settings or get_settings()
        _lock_store = LessonLockStore(settings.redis_url, settings.generation_lock_ttl_seconds)
    return _lock_store
