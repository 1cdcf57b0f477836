from __future__ import annotations

import base64
import hashlib
import hmac

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authedge.logging import get_logger

logger = get_logger(__name__)


class TokenHasher:
    """Keyed HMAC-SHA256 so stored session keys cannot be replayed as tokens."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("token hashing requires a non-empty secret")
        self._key = secret.encode()

    def hash(self, token: str) -> str:
        digest = hmac.new(self._key, token.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()


class CredentialVerifier:
    """argon2id password hashing and comparison.

    Comparison never reconstructs the plaintext; a dummy verification keeps
    unknown-account logins on the same timing path as wrong passwords.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash("authedge-dummy-password")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, stored_hash: str) -> bool:
        if not password:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError:
            return False

    def dummy_verify(self, password: str) -> None:
        self.verify(password or "x", self._dummy_hash)
