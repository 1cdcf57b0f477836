from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authedge.config import Settings, get_settings, reset_settings_cache
from authedge.logging import get_logger
from authedge.service.account_lock import AccountLockService
from authedge.service.auth import AuthenticationService
from authedge.service.codes import OneTimeCodeService
from authedge.service.crypto import CredentialVerifier, TokenHasher
from authedge.service.email import EmailService, Notifier
from authedge.service.gate import SessionGate
from authedge.service.rate_limit import RateCounter
from authedge.service.sessions import SessionService
from authedge.storage.accounts import MemoryAccountStore
from authedge.storage.kv import KeyValueStore
from authedge.storage.memory import MemoryCache
from authedge.storage.models import utc_now
from authedge.storage.redis_cache import RedisCache
from authedge.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kv: Optional[KeyValueStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.kv: KeyValueStore = kv if kv is not None else self._connect_store()

        self.hasher = TokenHasher(self.settings.hmac_secret or "")
        self.credentials = CredentialVerifier()
        self.accounts = MemoryAccountStore()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.notifier = Notifier()

        self.session_store = SessionStore(
            self.kv,
            self.hasher,
            session_prefix=self.settings.session_prefix,
            account_session_prefix=self.settings.account_session_prefix,
        )
        self.sessions = SessionService(self.session_store, self.settings, clock=clock)
        self.gate = SessionGate(
            self.session_store,
            session_ttl_seconds=self.settings.session_ttl_seconds,
            clock=clock,
        )
        self.counter = RateCounter(self.kv)
        self.locks = AccountLockService(self.accounts, clock=clock)
        self.codes = OneTimeCodeService(
            self.kv,
            self.counter,
            self.settings,
            email=self.email,
            notifier=self.notifier,
            clock=clock,
        )
        self.auth = AuthenticationService(
            self.accounts,
            self.sessions,
            self.locks,
            self.counter,
            self.credentials,
            self.settings,
            email=self.email,
            codes=self.codes,
            notifier=self.notifier,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.kv).__name__,
            email_configured=self.email.is_configured,
            max_sessions_per_account=self.settings.max_sessions_per_account,
        )

    def _connect_store(self) -> KeyValueStore:
        if self.settings.use_memory_store:
            return MemoryCache(clock=self.clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and login throttling; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and attempt "
                "counters are in-memory only and not shared between processes."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def close(self) -> None:
        await self.notifier.drain()
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.kv.close())
            except RuntimeError:
                asyncio.run(runtime.kv.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
