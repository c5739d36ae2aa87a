from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from warden.storage.models import Account

RoleName = Literal["user", "admin", "superadmin"]


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Please provide a valid email")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("Please provide a valid email")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please provide a valid email")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("Username must be at least 3 characters long")
    if len(value) > 64:
        raise ValueError("Username must be at most 64 characters long")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "Username may contain only letters, digits, dots, underscores, and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    otp: str = Field(..., pattern=r"^\d{6}$")


class RefreshTokenRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminCreateUserRequest(_CamelModel):
    username: str
    email: str
    password: str
    role: RoleName = "user"
    is_active: bool = True

    @field_validator("username")
    @classmethod
    def _validate_admin_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminUpdateUserRequest(_CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[RoleName] = None
    is_active: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def _validate_update_username(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_email(value)


class AdminResetPasswordRequest(BaseModel):
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _validate_temp_password(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_password_strength(value)


class AccountResponse(_CamelModel):
    """Client-facing view of an account; never carries secrets."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: str
    username: str
    email: str
    role: str
    is_active: bool
    email_verified: bool
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def render(cls, account: Account) -> Dict[str, Any]:
        return cls.model_validate(account).model_dump(by_alias=True, mode="json")


class PaginationResponse(_CamelModel):
    total: int
    pages: int
    current_page: int
    limit: int


def envelope(message: Optional[str] = None, **payload: Any) -> Dict[str, Any]:
    """Success envelope: ``{"success": true, "message"?, ...payload}``."""
    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    body.update(payload)
    return body


def error_envelope(
    message: str,
    *,
    code: str,
    errors: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message, "code": code}
    if errors:
        body["errors"] = errors
    body.update(extra)
    return body
