from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import AccountNotActiveError, AuthenticationError
from warden.storage.common import AccountStore
from warden.storage.models import Account, utc_now

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class SessionIssuer:
    """Mints and verifies stateless HS256 access/refresh tokens.

    Access tokens carry only the account id. Refresh tokens are signed with a
    separate secret and carry ``ver``, the account's ``token_version``; bumping
    that counter (logout, rotation, password change) invalidates every refresh
    token minted before it.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger or get_logger(__name__)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return self._clock()

    def _secret_for(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_refresh_secret
            if token_type == REFRESH
            else self.settings.jwt_secret
        )
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        if not token or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def issue(self, account: Account) -> TokenPair:
        """Mint a fresh access/refresh pair for ``account``."""
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "iat": int(now.timestamp()),
        }
        access_payload = {
            **base,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "ver": account.token_version,
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, ACCESS),
            refresh_token=self._encode_jwt(refresh_payload, REFRESH),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def authenticate(self, access_token: Optional[str]) -> Account:
        """Resolve a bearer token to a live, active account."""
        if not access_token:
            raise AuthenticationError("Not authorized, no token")
        payload = self._decode_jwt(access_token, ACCESS)
        if not payload:
            raise AuthenticationError("Not authorized, token failed")
        account = await self.store.find_by_id(payload["sub"])
        if not account:
            raise AuthenticationError("User not found")
        if not account.is_active:
            raise AccountNotActiveError("Account is not active")
        return account

    async def rotate(self, refresh_token: Optional[str]) -> Tuple[Account, TokenPair]:
        """Exchange a refresh token for a brand-new pair, retiring the old one."""
        if not refresh_token:
            raise AuthenticationError("No refresh token provided")
        payload = self._decode_jwt(refresh_token, REFRESH)
        if not payload:
            raise AuthenticationError("Invalid or expired refresh token")
        account = await self.store.find_by_id(payload["sub"])
        if not account:
            raise AuthenticationError("Invalid refresh token")
        if payload.get("ver") != account.token_version:
            self.logger.warning(
                "refresh_token_superseded",
                account_id=account.id,
                presented_version=payload.get("ver"),
                current_version=account.token_version,
            )
            raise AuthenticationError("Invalid or expired refresh token")
        if not account.is_active:
            raise AccountNotActiveError("Account is not active")
        account = await self.revoke(account)
        return account, self.issue(account)

    async def revoke(self, account: Account) -> Account:
        """Invalidate every refresh token issued to ``account`` so far."""
        bumped = account.evolve(self._now(), token_version=account.token_version + 1)
        saved = await self.store.save(bumped)
        self.logger.info(
            "refresh_tokens_revoked", account_id=saved.id, token_version=saved.token_version
        )
        return saved
