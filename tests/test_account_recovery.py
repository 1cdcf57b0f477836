"""Tests for email verification, password reset and password change."""
import uuid
from unittest.mock import MagicMock

import pytest

from authedge.service.account_lock import AccountLockService
from authedge.service.auth import AuthenticationService
from authedge.service.codes import OneTimeCodeService
from authedge.service.crypto import CredentialVerifier
from authedge.service.email import Notifier
from authedge.service.errors import (
    BadRequestError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
)
from authedge.service.rate_limit import RateCounter
from authedge.service.sessions import SessionService
from authedge.storage.accounts import MemoryAccountStore

EMAIL = "carol@example.com"
PASSWORD = "old password 123"
NEW_PASSWORD = "brand new password 456"

_verifier = CredentialVerifier()


@pytest.fixture
def accounts():
    store = MemoryAccountStore()
    store.create_account(EMAIL, _verifier.hash_password(PASSWORD))
    return store


@pytest.fixture
def codes(kv, settings, clock):
    email = MagicMock()
    email.send_code.return_value = True
    return OneTimeCodeService(
        kv, RateCounter(kv), settings, email=email, notifier=Notifier(), clock=clock
    )


@pytest.fixture
def auth(accounts, session_store, kv, clock, settings, codes):
    email = MagicMock()
    return AuthenticationService(
        accounts,
        SessionService(session_store, settings, clock=clock),
        AccountLockService(accounts, clock=clock),
        RateCounter(kv),
        _verifier,
        settings,
        email=email,
        codes=codes,
        notifier=Notifier(),
        clock=clock,
    )


class TestVerifyEmail:
    async def test_code_marks_email_verified(self, auth, accounts, codes):
        assert (await accounts.get_by_email(EMAIL)).email_verified is False
        code = await codes.issue("email_verification", EMAIL)

        account = await auth.verify_email(EMAIL.upper(), code)

        assert account.email_verified is True
        assert (await accounts.get_by_email(EMAIL)).email_verified is True

    async def test_wrong_code_is_rejected(self, auth, accounts, codes):
        await codes.issue("email_verification", EMAIL)

        with pytest.raises(BadRequestError):
            await auth.verify_email(EMAIL, "999999x")

        assert (await accounts.get_by_email(EMAIL)).email_verified is False

    async def test_reset_code_does_not_verify_email(self, auth, codes):
        code = await codes.issue("password_reset", EMAIL)

        with pytest.raises(BadRequestError):
            await auth.verify_email(EMAIL, code)


class TestResetPassword:
    async def test_reset_sets_password_and_logs_out_everywhere(
        self, auth, accounts, codes, session_store
    ):
        _, first = await auth.authenticate(EMAIL, PASSWORD)
        _, second = await auth.authenticate(EMAIL, PASSWORD)
        code = await codes.issue("password_reset", EMAIL)

        removed = await auth.reset_password(EMAIL, code, NEW_PASSWORD)

        assert removed == 2
        assert await session_store.find_by_id(first.session_id) is None
        assert await session_store.find_by_id(second.session_id) is None
        with pytest.raises(InvalidCredentialsError):
            await auth.authenticate(EMAIL, PASSWORD)
        account, _ = await auth.authenticate(EMAIL, NEW_PASSWORD)
        assert account.email == EMAIL

    async def test_reset_code_is_single_use(self, auth, codes):
        code = await codes.issue("password_reset", EMAIL)
        await auth.reset_password(EMAIL, code, NEW_PASSWORD)

        with pytest.raises(BadRequestError):
            await auth.reset_password(EMAIL, code, "yet another password")

    async def test_reset_to_same_password_rejected(self, auth, accounts, codes):
        code = await codes.issue("password_reset", EMAIL)

        with pytest.raises(BadRequestError):
            await auth.reset_password(EMAIL, code, PASSWORD)

        account = await accounts.get_by_email(EMAIL)
        assert _verifier.verify(PASSWORD, account.password_hash)

    async def test_reset_for_unknown_address(self, auth):
        with pytest.raises(BadRequestError):
            await auth.reset_password("nobody@example.com", "123456", NEW_PASSWORD)

    async def test_reset_clears_failed_login_counter(self, auth, codes, kv):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.authenticate(EMAIL, "guess")
        code = await codes.issue("password_reset", EMAIL)

        await auth.reset_password(EMAIL, code, NEW_PASSWORD)

        assert await kv.get(f"auth:login_attempts:{EMAIL}") is None


class TestChangePassword:
    async def test_change_keeps_current_session_only(self, auth, session_store):
        account, current = await auth.authenticate(EMAIL, PASSWORD)
        _, other = await auth.authenticate(EMAIL, PASSWORD)

        removed = await auth.change_password(
            account.id, PASSWORD, NEW_PASSWORD, keep_session_hash=current.session_hash
        )

        assert removed == 1
        assert await session_store.find_by_id(current.session_id) is not None
        assert await session_store.find_by_id(other.session_id) is None
        await auth.authenticate(EMAIL, NEW_PASSWORD)

    async def test_wrong_current_password(self, auth, accounts):
        account = await accounts.get_by_email(EMAIL)

        with pytest.raises(InvalidCredentialsError):
            await auth.change_password(account.id, "not it", NEW_PASSWORD)

        assert _verifier.verify(PASSWORD, (await accounts.get(account.id)).password_hash)

    async def test_same_password_rejected(self, auth, accounts):
        account = await accounts.get_by_email(EMAIL)

        with pytest.raises(BadRequestError):
            await auth.change_password(account.id, PASSWORD, PASSWORD)

    async def test_unknown_account(self, auth):
        with pytest.raises(NotFoundError):
            await auth.change_password(uuid.uuid4(), PASSWORD, NEW_PASSWORD)

    async def test_attempts_are_throttled(self, auth, accounts):
        account = await accounts.get_by_email(EMAIL)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.change_password(account.id, "wrong", NEW_PASSWORD)

        with pytest.raises(RateLimitedError):
            await auth.change_password(account.id, PASSWORD, NEW_PASSWORD)
