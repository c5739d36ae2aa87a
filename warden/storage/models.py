from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLES = ("user", "admin", "superadmin")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OneTimeSecret:
    """A single outstanding secret for one purpose (activation, reset, OTP).

    ``value`` is a SHA-256 digest for link tokens and the clear code for OTPs.
    """

    value: str
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "expires_at": self.expires_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["OneTimeSecret"]:
        if not data:
            return None
        return cls(
            value=data["value"],
            expires_at=_parse_dt(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass(frozen=True)
class Account:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    role: str = "user"
    is_active: bool = False
    email_verified: bool = False
    activation: Optional[OneTimeSecret] = None
    password_reset: Optional[OneTimeSecret] = None
    otp: Optional[OneTimeSecret] = None
    otp_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    token_version: int = 0
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(
        cls,
        *,
        username: str,
        email: str,
        password_hash: str,
        now: datetime,
        role: str = "user",
        is_active: bool = False,
        email_verified: bool = False,
        activation: Optional[OneTimeSecret] = None,
    ) -> "Account":
        """Build a brand-new record; the caller has already hashed the password."""
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        return cls(
            id=str(uuid.uuid4()),
            username=username.strip(),
            email=normalize_email(email),
            password_hash=password_hash,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
            activation=activation,
            created_at=now,
            updated_at=now,
        )

    def evolve(self, now: datetime, **changes: Any) -> "Account":
        """Return a copy with ``changes`` applied and ``updated_at`` stamped."""
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if "role" in changes and changes["role"] not in ROLES:
            raise ValueError(f"unknown role: {changes['role']}")
        return replace(self, updated_at=now, **changes)

    def without_credentials(self) -> "Account":
        return replace(self, password_hash=None)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_SECRET_SLOTS = ("activation", "password_reset", "otp")
_DATETIME_FIELDS = ("locked_until", "last_login", "created_at", "updated_at")


def account_to_dict(account: Account) -> Dict[str, Any]:
    """Serialise every field, including the password hash, for persistence."""
    data: Dict[str, Any] = {}
    for f in fields(account):
        value = getattr(account, f.name)
        if f.name in _SECRET_SLOTS:
            data[f.name] = value.to_dict() if value else None
        elif isinstance(value, datetime):
            data[f.name] = value.isoformat()
        else:
            data[f.name] = value
    return data


def account_from_dict(data: Dict[str, Any]) -> Account:
    kwargs = dict(data)
    for slot in _SECRET_SLOTS:
        kwargs[slot] = OneTimeSecret.from_dict(kwargs.get(slot))
    for name in _DATETIME_FIELDS:
        kwargs[name] = _parse_dt(kwargs.get(name))
    known = {f.name for f in fields(Account)}
    return Account(**{k: v for k, v in kwargs.items() if k in known})
