from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from authedge.config import Settings
from authedge.logging import get_logger, session_fingerprint
from authedge.service.errors import ConflictError, NotFoundError
from authedge.storage.models import Session, utc_now
from authedge.storage.sessions import SessionStore

logger = get_logger(__name__)


class SessionService:
    """Creates, refreshes and revokes sessions while enforcing the per-account cap."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttl = timedelta(seconds=settings.session_ttl_seconds)
        self.hard_ttl = timedelta(seconds=settings.session_hard_ttl_seconds)
        self.max_sessions = settings.max_sessions_per_account

    async def _evict_oldest(self, account_id: uuid.UUID) -> None:
        if self.max_sessions <= 0:
            return
        sessions = sorted(
            await self.store.find_all_by_account(account_id), key=lambda s: s.created_at
        )
        while len(sessions) >= self.max_sessions:
            oldest = sessions.pop(0)
            await self.store.delete(oldest)
            logger.info(
                "session_evicted",
                account_id=str(account_id),
                session=session_fingerprint(oldest.session_hash),
                created_at=oldest.created_at.isoformat(),
                max_sessions=self.max_sessions,
            )

    async def create_session(
        self,
        account_id: uuid.UUID,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        presented_session_id: Optional[str] = None,
    ) -> Session:
        """Issue a new session; the returned object carries the raw token.

        Raises ``ConflictError`` when the caller already holds a live session.
        """
        if presented_session_id and await self.store.exists(presented_session_id):
            raise ConflictError("already logged in; log out first")

        await self._evict_oldest(account_id)

        session = Session.new(
            account_id,
            ttl=self.ttl,
            hard_ttl=self.hard_ttl,
            ip=ip,
            user_agent=user_agent,
            now=self.clock(),
        )
        await self.store.save(session)
        logger.info(
            "session_created",
            account_id=str(account_id),
            session=session_fingerprint(session.session_hash),
            expires_at=session.expires_at.isoformat(),
            hard_expiration=session.hard_expiration.isoformat(),
        )
        return session

    def refresh_session(self, old: Session, ttl: Optional[timedelta] = None) -> Session:
        return old.refreshed(ttl or self.ttl, now=self.clock())

    async def logout(self, session_id: str, *, all_devices: bool = False) -> int:
        session = await self.store.find_by_id(session_id)
        if session is None:
            raise NotFoundError("no such session")
        if all_devices:
            removed = await self.store.delete_all_by_account(session.account_id)
        else:
            await self.store.delete(session)
            removed = 1
        logger.info(
            "session_logout",
            account_id=str(session.account_id),
            all_devices=all_devices,
            removed=removed,
        )
        return removed

    async def revoke_account_sessions(
        self, account_id: uuid.UUID, *, keep_session_hash: Optional[str] = None
    ) -> int:
        """Terminate every session of the account, optionally sparing the caller's own."""
        if keep_session_hash is None:
            removed = await self.store.delete_all_by_account(account_id)
        else:
            removed = 0
            for session in await self.store.find_all_by_account(account_id):
                if session.session_hash != keep_session_hash:
                    await self.store.delete(session)
                    removed += 1
        logger.info("account_sessions_revoked", account_id=str(account_id), removed=removed)
        return removed

    async def list_sessions(self, account_id: uuid.UUID) -> List[Session]:
        now = self.clock()
        sessions = [
            s for s in await self.store.find_all_by_account(account_id)
            if not s.is_hard_expired(now)
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)


__all__ = ["SessionService"]
