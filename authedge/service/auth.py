from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from authedge.config import Settings
from authedge.logging import get_logger
from authedge.service.account_lock import AccountLockService
from authedge.service.codes import OneTimeCodeService
from authedge.service.crypto import CredentialVerifier
from authedge.service.email import EmailService, Notifier
from authedge.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
)
from authedge.service.rate_limit import RateCounter
from authedge.service.sessions import SessionService
from authedge.storage.accounts import AccountStore
from authedge.storage.models import Account, Session, utc_now

logger = get_logger(__name__)

PASSWORD_CHANGE_LIMIT = 5
PASSWORD_CHANGE_WINDOW_SECONDS = 300


class AuthenticationService:
    """Password login guarded by a failed-attempt counter and account lockout.

    Failed attempts are counted per lower-cased email inside a fixed window.
    The attempt that arrives once the counter has reached
    ``max_login_attempts`` locks the account for ``lockout_minutes`` whatever
    its credentials, clears the counter and sends a lockout notice.
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionService,
        locks: AccountLockService,
        counter: RateCounter,
        credentials: CredentialVerifier,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        codes: Optional[OneTimeCodeService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.locks = locks
        self.counter = counter
        self.credentials = credentials
        self.email = email or EmailService()
        self.notifier = notifier or Notifier()
        self.codes = codes
        self.clock = clock
        self.max_attempts = settings.max_login_attempts
        self.window_seconds = settings.login_attempt_window_seconds
        self.lockout = timedelta(minutes=settings.lockout_minutes)
        self.clear_on_success = settings.clear_login_attempts_on_success
        self.attempts_prefix = settings.login_attempts_prefix

    def _attempts_key(self, email: str) -> str:
        return f"{self.attempts_prefix}{email.strip().lower()}"

    async def _record_failure(self, key: str, reason: str) -> None:
        attempts = await self.counter.increment(key, self.window_seconds)
        logger.warning("login_failed", reason=reason, attempts=attempts)

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        presented_session_id: Optional[str] = None,
    ) -> Tuple[Account, Session]:
        key = self._attempts_key(email)
        account = await self.accounts.get_by_email(email)
        if account is None:
            # Same cost and same answer as a wrong password
            self.credentials.dummy_verify(password)
            await self._record_failure(key, "unknown_account")
            raise InvalidCredentialsError()

        await self.locks.ensure_unlocked(account)

        if self.max_attempts >= 0 and await self.counter.get_attempts(key) >= self.max_attempts:
            await self.counter.clear(key)
            now = self.clock()
            until = now + self.lockout
            await self.locks.lock_account(account, until)
            self.notifier.notify(
                "lockout_notice", self.email.send_lockout_notice, account.email, until
            )
            raise AccountLockedError(until, now=now)

        if not self.credentials.verify(password, account.password_hash):
            await self._record_failure(key, "bad_password")
            raise InvalidCredentialsError()

        if not account.enabled:
            logger.warning("login_rejected_disabled", account_id=str(account.id))
            raise AuthenticationError("account is disabled")

        if self.clear_on_success:
            await self.counter.clear(key)

        session = await self.sessions.create_session(
            account.id, ip, user_agent, presented_session_id=presented_session_id
        )
        logger.info("login_succeeded", account_id=str(account.id))
        return account, session

    async def delete_account(self, account_id: uuid.UUID) -> int:
        """Remove the account, then every session it still holds."""
        if not await self.accounts.delete(account_id):
            raise NotFoundError("no such account")
        removed = await self.sessions.revoke_account_sessions(account_id)
        logger.info("account_deleted", account_id=str(account_id), sessions_removed=removed)
        return removed

    async def _consume_code(self, purpose: str, email: str, code: str) -> Account:
        if self.codes is None or not await self.codes.verify(purpose, email, code):
            logger.warning("code_rejected", purpose=purpose)
            raise BadRequestError("invalid or expired code")
        account = await self.accounts.get_by_email(email)
        if account is None:
            # Codes are only ever delivered to registered addresses
            logger.warning("code_account_missing", purpose=purpose)
            raise BadRequestError("invalid or expired code")
        return account

    async def verify_email(self, email: str, code: str) -> Account:
        account = await self._consume_code("email_verification", email, code)
        account.email_verified = True
        await self.accounts.save(account)
        logger.info("email_verified", account_id=str(account.id))
        return account

    async def reset_password(self, email: str, code: str, new_password: str) -> int:
        """Set a new password from a reset code and log out every device.

        Returns the number of sessions that were revoked.
        """
        account = await self._consume_code("password_reset", email, code)
        if self.credentials.verify(new_password, account.password_hash):
            raise BadRequestError("new password must differ from the current one")
        account.password_hash = self.credentials.hash_password(new_password)
        await self.accounts.save(account)
        await self.counter.clear(self._attempts_key(account.email))
        removed = await self.sessions.revoke_account_sessions(account.id)
        logger.info(
            "password_reset_completed", account_id=str(account.id), sessions_removed=removed
        )
        return removed

    async def change_password(
        self,
        account_id: uuid.UUID,
        current_password: str,
        new_password: str,
        *,
        keep_session_hash: Optional[str] = None,
    ) -> int:
        """Replace the password of a logged-in account.

        Other sessions are revoked; the one named by ``keep_session_hash``
        stays logged in.
        """
        throttle_key = f"{self.attempts_prefix}password_change:{account_id}"
        if await self.counter.max_reached(
            throttle_key, PASSWORD_CHANGE_LIMIT, PASSWORD_CHANGE_WINDOW_SECONDS
        ):
            raise RateLimitedError("too many password changes")
        account = await self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("no such account")
        if not self.credentials.verify(current_password, account.password_hash):
            logger.warning("password_change_rejected", account_id=str(account_id))
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise BadRequestError("new password must differ from the current one")
        account.password_hash = self.credentials.hash_password(new_password)
        await self.accounts.save(account)
        removed = await self.sessions.revoke_account_sessions(
            account_id, keep_session_hash=keep_session_hash
        )
        logger.info("password_changed", account_id=str(account_id), sessions_removed=removed)
        return removed


__all__ = ["AuthenticationService"]
