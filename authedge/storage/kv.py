"""Capability interface for the shared session/counter store.

Anything that offers TTL-aware get/set/delete, an atomic increment and sets
can back the session and abuse-control subsystem. Only single-key atomicity
is assumed; callers never rely on multi-key transactions.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Set


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def set(self, key: str, value: str, *, expires_at: datetime) -> None: ...

    async def replace(self, key: str, value: str, *, expires_at: datetime) -> bool:
        """Overwrite only a live key; returns False and writes nothing when it is gone."""
        ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr(self, key: str, *, ttl_seconds: int) -> int:
        """Increment atomically; ``ttl_seconds`` applies only when the key is created."""
        ...

    async def add_member(self, key: str, member: str, *, expires_at: datetime) -> None:
        """Add to a set; the set's expiry is extended, never shortened."""
        ...

    async def remove_member(self, key: str, member: str) -> None: ...

    async def members(self, key: str) -> Set[str]: ...

    async def close(self) -> None: ...


__all__ = ["KeyValueStore"]
