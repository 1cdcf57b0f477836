from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "account_locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    device_type: str = Field(default="web", max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("device_type")
    @classmethod
    def _normalize_device_type(cls, value: str) -> str:
        normalized = (value or "web").lower()
        if normalized not in {"web", "mobile"}:
            raise ValueError("device_type must be 'web' or 'mobile'")
        return normalized


class LoginResponse(BaseModel):
    account_id: str
    session_expires_at: datetime
    session_hard_expiration: datetime
    # Only returned to mobile clients; web clients get the cookie
    session_id: Optional[str] = None


class LogoutRequest(BaseModel):
    all_devices: bool = False


class MeResponse(BaseModel):
    account_id: str
    email: Optional[str] = None
    email_verified: bool = False
    authorities: List[str]


class SessionInfo(BaseModel):
    created_at: datetime
    expires_at: datetime
    hard_expiration: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class CodeRequest(BaseModel):
    purpose: Literal["email_verification", "password_reset"]
    email: str

    @field_validator("email")
    @classmethod
    def _validate_code_email(cls, value: str) -> str:
        return _validate_email(value)


def _validate_new_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class EmailVerifyRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(EmailVerifyRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_new_password(value)


class PasswordChangeRequest(BaseModel):
    """Change the password of the logged-in account."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_changed_password(cls, value: str) -> str:
        return _validate_new_password(value)
