"""Per-request session authentication.

The gate turns the session token a client presents (cookie or
``Authorization`` header) into an :class:`AuthContext` bound to the current
request context. It also slides the soft expiry of sessions that are still
inside their hard ceiling and removes sessions that are past it.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from authedge.logging import get_logger, session_fingerprint
from authedge.service.errors import BadRequestError, NotFoundError
from authedge.storage.models import utc_now
from authedge.storage.sessions import SessionStore

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthContext:
    account_id: uuid.UUID
    session_hash: str
    authorities: Tuple[str, ...] = ("authenticated",)
    session_id: Optional[str] = None


_identity: ContextVar[Optional[AuthContext]] = ContextVar("auth_identity", default=None)


def current_identity() -> Optional[AuthContext]:
    return _identity.get()


def clear_identity() -> None:
    _identity.set(None)


class SessionGate:
    def __init__(
        self,
        store: SessionStore,
        *,
        session_ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=session_ttl_seconds)
        self.clock = clock

    @staticmethod
    def resolve_session_id(
        cookie: Optional[str], authorization: Optional[str]
    ) -> Optional[str]:
        """Pick the presented token; cookie and header must agree when both are set."""
        header_value = None
        if authorization:
            header_value = authorization.strip()
            if header_value.startswith(BEARER_PREFIX):
                header_value = header_value[len(BEARER_PREFIX):].strip()
        cookie = cookie or None
        header_value = header_value or None
        if cookie and header_value and cookie != header_value:
            raise BadRequestError("conflicting session identifiers")
        return cookie or header_value

    async def authenticate(
        self, cookie: Optional[str], authorization: Optional[str]
    ) -> Optional[AuthContext]:
        session_id = self.resolve_session_id(cookie, authorization)
        if session_id is None:
            clear_identity()
            return None

        session = await self.store.find_by_id(session_id)
        if session is None:
            clear_identity()
            raise NotFoundError("no such session")

        now = self.clock()
        if session.is_hard_expired(now):
            await self.store.delete(session)
            clear_identity()
            logger.info(
                "session_hard_expired",
                account_id=str(session.account_id),
                session=session_fingerprint(session.session_hash),
            )
            return None

        if session.is_expired(now):
            session = session.refreshed(self.ttl, now=now)
            if not await self.store.update(session):
                # Terminated between the read and the write
                clear_identity()
                raise NotFoundError("no such session")
            logger.debug(
                "session_refreshed",
                account_id=str(session.account_id),
                expires_at=session.expires_at.isoformat(),
            )

        identity = current_identity()
        if identity is None:
            identity = AuthContext(
                account_id=session.account_id,
                session_hash=session.session_hash or "",
                session_id=session_id,
            )
            _identity.set(identity)
        return identity


__all__ = [
    "AuthContext",
    "SessionGate",
    "current_identity",
    "clear_identity",
]
