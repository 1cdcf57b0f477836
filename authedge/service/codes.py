from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from authedge.config import Settings
from authedge.logging import get_logger
from authedge.service.email import EmailService, Notifier
from authedge.service.errors import BadRequestError, RateLimitedError
from authedge.service.rate_limit import RateCounter
from authedge.storage.kv import KeyValueStore
from authedge.storage.models import utc_now

logger = get_logger(__name__)

CODE_PURPOSES = frozenset({"email_verification", "password_reset"})
CODE_DIGITS = 6
CODE_REQUEST_WINDOW_SECONDS = 3600


class OneTimeCodeService:
    """Short numeric codes for email verification and password reset.

    At most one code per purpose and subject is outstanding; issuing again
    replaces it. Requests are throttled per hour through the rate counter.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        counter: RateCounter,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.kv = kv
        self.counter = counter
        self.email = email or EmailService()
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.ttl = timedelta(seconds=settings.code_ttl_seconds)
        self.max_requests = settings.max_code_requests_per_hour
        self.max_verify_attempts = settings.max_code_verify_attempts
        self.code_prefix = settings.code_prefix
        self.attempts_prefix = settings.code_attempts_prefix

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in CODE_PURPOSES:
            raise BadRequestError("unknown code purpose", detail={"purpose": purpose})

    @staticmethod
    def _subject(subject: str) -> str:
        return subject.strip().lower()

    def _code_key(self, purpose: str, subject: str) -> str:
        return f"{self.code_prefix}{purpose}:{subject}"

    def _failures_key(self, purpose: str, subject: str) -> str:
        return f"{self.attempts_prefix}verify:{purpose}:{subject}"

    async def issue(self, purpose: str, subject: str, *, deliver: bool = True) -> Optional[str]:
        """Issue a fresh code and send it to ``subject``.

        With ``deliver=False`` only the request throttle is applied, so callers
        can answer requests for unknown addresses on the same path.
        """
        self._check_purpose(purpose)
        subject = self._subject(subject)
        throttle_key = f"{self.attempts_prefix}{purpose}:{subject}"
        if await self.counter.max_reached(
            throttle_key, self.max_requests, CODE_REQUEST_WINDOW_SECONDS
        ):
            logger.warning("code_request_throttled", purpose=purpose)
            raise RateLimitedError("too many code requests")
        if not deliver:
            return None

        code = f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"
        await self.kv.set(
            self._code_key(purpose, subject), code, expires_at=self.clock() + self.ttl
        )
        await self.counter.clear(self._failures_key(purpose, subject))
        self.notifier.notify(
            purpose,
            self.email.send_code,
            subject,
            purpose,
            code,
            ttl_minutes=max(1, int(self.ttl.total_seconds() // 60)),
        )
        logger.info("code_issued", purpose=purpose)
        return code

    async def verify(self, purpose: str, subject: str, code: str) -> bool:
        """Check and consume a code; a used code cannot be replayed.

        Wrong guesses are counted against the outstanding code. The guess that
        reaches ``max_code_verify_attempts`` withdraws the code and raises
        ``RateLimitedError``; a new code has to be requested after that.
        """
        self._check_purpose(purpose)
        subject = self._subject(subject)
        key = self._code_key(purpose, subject)
        failures_key = self._failures_key(purpose, subject)
        stored = await self.kv.get(key)
        if stored is None:
            return False
        if await self.counter.get_attempts(failures_key) >= self.max_verify_attempts:
            await self._withdraw(purpose, key)
            raise RateLimitedError("too many wrong codes; request a new one")
        if not code or not hmac.compare_digest(stored.encode(), code.strip().encode()):
            failures = await self.counter.increment(
                failures_key, int(self.ttl.total_seconds())
            )
            logger.warning("code_verify_failed", purpose=purpose, failures=failures)
            if failures >= self.max_verify_attempts:
                await self._withdraw(purpose, key)
                raise RateLimitedError("too many wrong codes; request a new one")
            return False
        await self.kv.delete(key)
        await self.counter.clear(failures_key)
        logger.info("code_verified", purpose=purpose)
        return True

    async def _withdraw(self, purpose: str, key: str) -> None:
        await self.kv.delete(key)
        logger.warning("code_withdrawn", purpose=purpose)


__all__ = ["OneTimeCodeService", "CODE_PURPOSES"]
