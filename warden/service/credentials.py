"""One-time secrets and password hashing.

Link tokens (activation, password reset) are 160-bit random hex strings handed
to the user once and stored only as SHA-256 digests. OTPs are six-digit codes
stored in clear next to a short expiry and an attempt counter.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.storage.models import OneTimeSecret

logger = get_logger(__name__)

TOKEN_BYTES = 20
OTP_MIN = 100000
OTP_MAX = 999999


def hash_token(clear: str) -> str:
    return hashlib.sha256(clear.encode("utf-8")).hexdigest()


def generate_token() -> Tuple[str, str]:
    """Return ``(clear, digest)`` for a fresh link token."""
    clear = secrets.token_hex(TOKEN_BYTES)
    return clear, hash_token(clear)


def generate_otp() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def generate_password() -> str:
    """Temporary password for administrator-initiated resets."""
    return secrets.token_hex(10)


def issue_token(now: datetime, ttl: timedelta) -> Tuple[str, OneTimeSecret]:
    clear, digest = generate_token()
    return clear, OneTimeSecret(value=digest, expires_at=now + ttl)


def issue_otp(now: datetime, ttl: timedelta) -> Tuple[str, OneTimeSecret]:
    code = generate_otp()
    return code, OneTimeSecret(value=code, expires_at=now + ttl)


def matches(
    slot: Optional[OneTimeSecret], candidate: str, now: datetime, *, hashed: bool
) -> bool:
    """Constant-time check of ``candidate`` against a live slot."""
    if slot is None or slot.is_expired(now) or not candidate:
        return False
    presented = hash_token(candidate) if hashed else candidate
    return hmac.compare_digest(slot.value.encode(), presented.encode())


class PasswordHasher:
    """argon2id password hashing."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, digest: Optional[str], password: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        return self._hasher.check_needs_rehash(digest)
