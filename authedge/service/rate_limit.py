from __future__ import annotations

from authedge.logging import get_logger
from authedge.storage.kv import KeyValueStore

logger = get_logger(__name__)

UNLIMITED = -1
DEFAULT_WINDOW_SECONDS = 60


class RateCounter:
    """Fixed-window attempt counters shared through the key-value store.

    The window opens on the first increment of a key and is not extended by
    later increments; once it lapses the key vanishes and counting restarts.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _window(key: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return window_seconds

    async def max_reached(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """Count one attempt and report whether the limit was already hit.

        With ``max_attempts=5`` calls 1 through 5 return ``False`` and the
        sixth returns ``True``. Negative limits mean unlimited and never touch
        the store.
        """
        if max_attempts < 0:
            return False
        count = await self.kv.incr(key, ttl_seconds=self._window(key, window_seconds))
        return count - 1 >= max_attempts

    async def get_attempts(self, key: str) -> int:
        value = await self.kv.get(key)
        return int(value) if value is not None else 0

    async def increment(self, key: str, window_seconds: int) -> int:
        return await self.kv.incr(key, ttl_seconds=self._window(key, window_seconds))

    async def clear(self, key: str) -> None:
        await self.kv.delete(key)


__all__ = ["RateCounter", "UNLIMITED"]
