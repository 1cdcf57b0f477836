from __future__ import annotations

import base64
import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

SESSION_ID_BYTES = 32


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """256 bits from the OS CSPRNG, URL-safe base64 without padding."""
    raw = secrets.token_bytes(SESSION_ID_BYTES)
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Account:
    id: uuid.UUID
    email: str
    password_hash: str
    enabled: bool = True
    email_verified: bool = False
    locked: bool = False
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Session:
    """One authenticated client context.

    ``session_id`` holds the raw token and only exists in memory: on the
    object returned at login and on objects loaded by raw id. The store only
    ever sees ``session_hash``.
    """

    account_id: uuid.UUID
    created_at: datetime
    expires_at: datetime
    hard_expiration: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = field(default=None, repr=False)
    session_hash: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: uuid.UUID,
        *,
        ttl: timedelta,
        hard_ttl: timedelta,
        ip: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utc_now()
        hard_expiration = now + hard_ttl
        return cls(
            session_id=generate_session_id(),
            account_id=account_id,
            created_at=now,
            ip=ip,
            user_agent=user_agent,
            expires_at=min(now + ttl, hard_expiration),
            hard_expiration=hard_expiration,
        )

    def refreshed(self, ttl: timedelta, *, now: datetime | None = None) -> "Session":
        """Copy with the soft expiry slid forward, clamped to the hard ceiling."""
        now = now or utc_now()
        return replace(self, expires_at=min(now + ttl, self.hard_expiration))

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def is_hard_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) > self.hard_expiration

    def to_record(self) -> Dict[str, Any]:
        return {
            "session_hash": self.session_hash,
            "account_id": str(self.account_id),
            "created_at": self.created_at.isoformat(),
            "ip": self.ip,
            "user_agent": self.user_agent,
            "expires_at": self.expires_at.isoformat(),
            "hard_expiration": self.hard_expiration.isoformat(),
        }

    @classmethod
    def from_record(
        cls, record: Dict[str, Any], *, session_id: str | None = None
    ) -> "Session":
        return cls(
            session_id=session_id,
            session_hash=record["session_hash"],
            account_id=uuid.UUID(record["account_id"]),
            created_at=_parse_ts(record["created_at"]),
            ip=record.get("ip"),
            user_agent=record.get("user_agent"),
            expires_at=_parse_ts(record["expires_at"]),
            hard_expiration=_parse_ts(record["hard_expiration"]),
        )
