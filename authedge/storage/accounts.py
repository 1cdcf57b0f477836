from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, Optional, Protocol

from authedge.storage.models import Account


class AccountStore(Protocol):
    """Account persistence owned by the surrounding service."""

    async def get_by_email(self, email: str) -> Optional[Account]: ...

    async def get(self, account_id: uuid.UUID) -> Optional[Account]: ...

    async def save(self, account: Account) -> Account: ...

    async def delete(self, account_id: uuid.UUID) -> bool: ...


class MemoryAccountStore:
    """Dictionary-backed accounts; emails compare case-insensitively."""

    def __init__(self) -> None:
        self._accounts: Dict[uuid.UUID, Account] = {}
        self._lock = threading.Lock()

    def create_account(self, email: str, password_hash: str, **kwargs) -> Account:
        account = Account(
            id=uuid.uuid4(), email=email.strip(), password_hash=password_hash, **kwargs
        )
        with self._lock:
            if self._find_email(account.email) is not None:
                raise ValueError("email already registered")
            self._accounts[account.id] = account
        return replace(account)

    def _find_email(self, email: str) -> Optional[Account]:
        wanted = email.strip().lower()
        for account in self._accounts.values():
            if account.email.lower() == wanted:
                return account
        return None

    async def get_by_email(self, email: str) -> Optional[Account]:
        with self._lock:
            account = self._find_email(email)
            return replace(account) if account else None

    async def get(self, account_id: uuid.UUID) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    async def save(self, account: Account) -> Account:
        with self._lock:
            self._accounts[account.id] = replace(account)
        return account

    async def delete(self, account_id: uuid.UUID) -> bool:
        with self._lock:
            return self._accounts.pop(account_id, None) is not None


__all__ = ["AccountStore", "MemoryAccountStore"]
