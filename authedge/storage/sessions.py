"""Session records and the per-account session index.

Each session is stored twice over: the record under ``session_prefix + hash``
and the hash as a member of ``account_session_prefix + account_id``. The two
writes are independent. Readers reconcile instead of assuming atomicity:
index members whose record is gone are dropped on the next account scan,
and a record whose index write was lost simply expires at its hard ceiling.
"""

from __future__ import annotations

import json
import uuid
from typing import List, Optional

from authedge.logging import get_logger
from authedge.service.crypto import TokenHasher
from authedge.storage.kv import KeyValueStore
from authedge.storage.models import Session

logger = get_logger(__name__)


class SessionStore:
    def __init__(
        self,
        kv: KeyValueStore,
        hasher: TokenHasher,
        *,
        session_prefix: str = "auth:session:",
        account_session_prefix: str = "auth:account_sessions:",
    ) -> None:
        self.kv = kv
        self.hasher = hasher
        self.session_prefix = session_prefix
        self.account_session_prefix = account_session_prefix

    def _session_key(self, session_hash: str) -> str:
        return f"{self.session_prefix}{session_hash}"

    def _index_key(self, account_id: uuid.UUID) -> str:
        return f"{self.account_session_prefix}{account_id}"

    def _hash_of(self, session: Session) -> str:
        if session.session_id:
            return self.hasher.hash(session.session_id)
        if session.session_hash:
            return session.session_hash
        raise ValueError("session has neither a raw id nor a stored hash")

    def _decode(self, payload: str, *, session_id: Optional[str] = None) -> Optional[Session]:
        try:
            return Session.from_record(json.loads(payload), session_id=session_id)
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as exc:
            # Corrupted record - treat as a miss
            logger.warning("session_record_corrupt", error=str(exc))
            return None

    async def save(self, session: Session) -> Session:
        """Create or overwrite the record, then make sure the index holds it."""
        session.session_hash = self._hash_of(session)
        payload = json.dumps(session.to_record())
        await self.kv.set(
            self._session_key(session.session_hash),
            payload,
            expires_at=session.hard_expiration,
        )
        await self.kv.add_member(
            self._index_key(session.account_id),
            session.session_hash,
            expires_at=session.hard_expiration,
        )
        return session

    async def update(self, session: Session) -> bool:
        """Rewrite an existing record in place.

        Never recreates a record that a logout, eviction or account deletion
        has removed, and never touches the index. Returns False when the
        record is already gone.
        """
        session.session_hash = self._hash_of(session)
        return await self.kv.replace(
            self._session_key(session.session_hash),
            json.dumps(session.to_record()),
            expires_at=session.hard_expiration,
        )

    async def find_by_id(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        payload = await self.kv.get(self._session_key(self.hasher.hash(session_id)))
        if payload is None:
            return None
        return self._decode(payload, session_id=session_id)

    async def exists(self, session_id: str) -> bool:
        if not session_id:
            return False
        return await self.kv.exists(self._session_key(self.hasher.hash(session_id)))

    async def find_all_by_account(self, account_id: uuid.UUID) -> List[Session]:
        index_key = self._index_key(account_id)
        hashes = sorted(await self.kv.members(index_key))
        if not hashes:
            return []
        payloads = await self.kv.get_many([self._session_key(h) for h in hashes])
        sessions: List[Session] = []
        for session_hash, payload in zip(hashes, payloads):
            session = self._decode(payload) if payload is not None else None
            if session is None:
                # Index entry outlived its record
                await self.kv.remove_member(index_key, session_hash)
                logger.debug("session_index_pruned", account_id=str(account_id))
                continue
            sessions.append(session)
        return sessions

    async def delete(self, session: Session) -> None:
        """Remove record and index membership; deleting twice is a no-op."""
        session_hash = self._hash_of(session)
        await self.kv.delete(self._session_key(session_hash))
        await self.kv.remove_member(self._index_key(session.account_id), session_hash)

    async def delete_all_by_account(self, account_id: uuid.UUID) -> int:
        sessions = await self.find_all_by_account(account_id)
        for session in sessions:
            await self.delete(session)
        return len(sessions)


__all__ = ["SessionStore"]
