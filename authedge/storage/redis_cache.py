from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, List, Optional, Sequence, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authedge.logging import get_logger
from authedge.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper implementing the key-value capability interface."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Atomic increment that anchors the window on the first increment only
    _INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    # Set add whose expiry only ever moves later; TTL is -1/-2 for none/missing
    _ADD_MEMBER_SCRIPT = """
redis.call('SADD', KEYS[1], ARGV[1])
local wanted = tonumber(ARGV[2])
local current = redis.call('TTL', KEYS[1])
if current < wanted then
  redis.call('EXPIRE', KEYS[1], wanted)
end
return current
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr = self.client.register_script(self._INCR_SCRIPT)
        self._add_member = self.client.register_script(self._ADD_MEMBER_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a safe TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. Clamped to at least 1 second so
        Redis never rejects a zero or negative TTL.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as exc:
            logger.error("redis_operation_failed", op=op, error=str(exc))
            raise StoreUnavailable("session store unavailable", {"op": op}) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(await self._run("mget", self.client.mget(list(keys))))

    async def set(self, key: str, value: str, *, expires_at: datetime) -> None:
        await self._run(
            "set", self.client.set(key, value, ex=self._ttl_seconds(expires_at))
        )

    async def replace(self, key: str, value: str, *, expires_at: datetime) -> bool:
        # SET XX leaves missing keys untouched and answers None for them
        written = await self._run(
            "replace",
            self.client.set(key, value, ex=self._ttl_seconds(expires_at), xx=True),
        )
        return bool(written)

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def incr(self, key: str, *, ttl_seconds: int) -> int:
        count = await self._run("incr", self._incr(keys=[key], args=[int(ttl_seconds)]))
        return int(count)

    async def add_member(self, key: str, member: str, *, expires_at: datetime) -> None:
        await self._run(
            "add_member",
            self._add_member(keys=[key], args=[member, self._ttl_seconds(expires_at)]),
        )

    async def remove_member(self, key: str, member: str) -> None:
        await self._run("remove_member", self.client.srem(key, member))

    async def members(self, key: str) -> Set[str]:
        return set(await self._run("members", self.client.smembers(key)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
