from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from authedge.storage.models import utc_now

_Value = Union[str, int, Set[str]]


class MemoryCache:
    """In-process stand-in for Redis used in tests and local fallback.

    Expiry is evaluated lazily against ``clock`` so tests can move time
    forward without sleeping. Guarded by a lock because the test client runs
    the app on a separate thread.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[datetime]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def ttl(self, key: str) -> Optional[timedelta]:
        """Remaining lifetime, ``None`` for missing keys or keys without expiry."""
        with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._data[key][1]
            return None if expires_at is None else expires_at - self.clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if value is None:
                return None
            if isinstance(value, set):
                raise TypeError(f"{key} holds a set")
            return str(value)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [await self.get(key) for key in keys]

    async def set(self, key: str, value: str, *, expires_at: datetime) -> None:
        with self._lock:
            self._data[key] = (value, expires_at)

    async def replace(self, key: str, value: str, *, expires_at: datetime) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            self._data[key] = (value, expires_at)
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def incr(self, key: str, *, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                expires_at = self.clock() + timedelta(seconds=ttl_seconds)
                self._data[key] = (1, expires_at)
                return 1
            count = int(current) + 1
            self._data[key] = (count, self._data[key][1])
            return count

    async def add_member(self, key: str, member: str, *, expires_at: datetime) -> None:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._data[key] = ({member}, expires_at)
                return
            if not isinstance(current, set):
                raise TypeError(f"{key} does not hold a set")
            current.add(member)
            previous = self._data[key][1]
            if previous is not None and previous < expires_at:
                self._data[key] = (current, expires_at)

    async def remove_member(self, key: str, member: str) -> None:
        with self._lock:
            current = self._live(key)
            if isinstance(current, set):
                current.discard(member)
                if not current:
                    del self._data[key]

    async def members(self, key: str) -> Set[str]:
        with self._lock:
            current = self._live(key)
            return set(current) if isinstance(current, set) else set()

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryCache"]
