from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from authedge.logging import get_logger
from authedge.service.errors import AccountLockedError
from authedge.storage.accounts import AccountStore
from authedge.storage.models import Account, utc_now

logger = get_logger(__name__)


class AccountLockService:
    """Temporary or indefinite account locks persisted through the account store."""

    def __init__(
        self, accounts: AccountStore, *, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.accounts = accounts
        self.clock = clock

    async def lock_account(self, account: Account, until: Optional[datetime]) -> Account:
        """Lock until ``until``; ``None`` locks indefinitely."""
        account.locked = True
        account.locked_until = until
        await self.accounts.save(account)
        logger.warning(
            "account_locked",
            account_id=str(account.id),
            locked_until=until.isoformat() if until else None,
        )
        return account

    async def unlock_account(self, account: Account) -> Account:
        account.locked = False
        account.locked_until = None
        await self.accounts.save(account)
        logger.info("account_unlocked", account_id=str(account.id))
        return account

    async def ensure_unlocked(self, account: Account) -> Account:
        """Lift a lapsed lock or reject with the time remaining."""
        if not account.locked:
            return account
        now = self.clock()
        if account.locked_until is not None and account.locked_until <= now:
            return await self.unlock_account(account)
        raise AccountLockedError(account.locked_until, now=now)


__all__ = ["AccountLockService"]
