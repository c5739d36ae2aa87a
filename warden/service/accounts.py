"""Account lifecycle: registration, activation, login, recovery and admin flows.

Every state change goes through ``Account.evolve`` and an explicit
``store.save``; nothing here relies on storage-side hooks. Email side effects
are best-effort except in :meth:`AccountService.forgot_password`, where a
failed send rolls the reset slot back.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.service import roles
from warden.service.credentials import (
    PasswordHasher,
    generate_password,
    hash_token,
    issue_otp,
    issue_token,
    matches,
)
from warden.service.email import EmailDeliveryError, EmailReceipt, EmailService
from warden.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    ConflictError,
    InvalidCredentialsError,
    InvalidOrExpiredOtpError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ServerError,
)
from warden.service.sessions import SessionIssuer, TokenPair
from warden.storage.common import AccountFilter, AccountStore
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, normalize_email, utc_now

_DUPLICATE_MESSAGES = {
    "username": "Username is already taken",
    "email": "Email is already registered",
}


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a password login.

    Either ``tokens`` is set, or ``otp_required`` is True and the caller must
    complete the login through :meth:`AccountService.verify_otp`.
    """

    account: Account
    tokens: Optional[TokenPair] = None
    otp_required: bool = False


@dataclass(frozen=True)
class AccountPage:
    items: List[Account]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class AdminResetResult:
    account: Account
    email_sent: bool
    # Only populated when the user could not be emailed, or in test mode
    temp_password: Optional[str] = None


class AccountService:
    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        sessions: SessionIssuer,
        email: EmailService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.email = email
        self.settings = settings
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def _notify(
        self, kind: str, account: Account, send: Callable[[], Awaitable[EmailReceipt]]
    ) -> bool:
        """Run a best-effort email send; failures are logged, never raised."""
        try:
            await send()
        except EmailDeliveryError as exc:
            self.logger.warning(
                "email_notification_failed",
                kind=kind,
                account_id=account.id,
                error=str(exc),
            )
            return False
        return True

    def _conflict(self, exc: ConstraintViolation, message: Optional[str]) -> ConflictError:
        field = (exc.detail or {}).get("field")
        if message is None:
            message = _DUPLICATE_MESSAGES.get(
                field, "User already exists with that email or username"
            )
        return ConflictError(message, detail={"field": field} if field else None)

    async def _require_account(self, account_id: str) -> Account:
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    # Self-service ----------------------------------------------------------

    async def register(self, *, username: str, email: str, password: str) -> Account:
        """Create a pending account and email its activation link.

        Raises:
            ConflictError: username or email already taken.
        """
        now = self._now()
        ttl = timedelta(hours=self.settings.activation_token_ttl_hours)
        clear, slot = issue_token(now, ttl)
        account = Account.new(
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            now=now,
            activation=slot,
        )
        try:
            created = await self.store.create(account)
        except ConstraintViolation as exc:
            raise self._conflict(
                exc, "User already exists with that email or username"
            ) from exc
        self.logger.info("account_registered", account_id=created.id)
        await self._notify(
            "activation",
            created,
            lambda: self.email.send_activation(
                created.email,
                username=created.username,
                token=clear,
                ttl_minutes=int(ttl.total_seconds() // 60),
            ),
        )
        return created

    async def activate(self, token: str) -> Tuple[Account, TokenPair]:
        """Consume an activation token and sign the account in.

        Raises:
            InvalidOrExpiredTokenError: unknown, already used, or expired token.
        """
        now = self._now()
        account = await self.store.find_by_secret("activation", hash_token(token or ""))
        if account is None or not matches(account.activation, token, now, hashed=True):
            raise InvalidOrExpiredTokenError("Invalid or expired activation token")
        saved = await self.store.save(
            account.evolve(now, is_active=True, email_verified=True, activation=None)
        )
        self.logger.info("account_activated", account_id=saved.id)
        return saved, self.sessions.issue(saved)

    async def login(self, identity: str, password: str) -> LoginResult:
        """Verify a password, applying lockout policy and the optional OTP step.

        Raises:
            InvalidCredentialsError: unknown identity or wrong password.
            AccountLockedError: too many recent failures.
            AccountNotActiveError: correct password on an unactivated account.
        """
        now = self._now()
        account = await self.store.find_by_identity(identity, with_credentials=True)
        if account is None:
            self.logger.info("login_unknown_identity")
            raise InvalidCredentialsError()
        if account.is_locked(now):
            self.logger.warning("login_rejected_locked", account_id=account.id)
            raise AccountLockedError(account.locked_until)

        if not self.hasher.verify(account.password_hash, password):
            await self._record_failure(account, now)
            raise InvalidCredentialsError()

        if not account.is_active:
            raise AccountNotActiveError(
                "Account not activated. Please check your email for activation link.",
                status_code=401,
            )

        changes = {"failed_login_attempts": 0, "locked_until": None, "last_login": now}
        if self.hasher.needs_rehash(account.password_hash):
            changes["password_hash"] = self.hasher.hash(password)

        if not self.settings.require_otp:
            saved = await self.store.save(account.evolve(now, **changes))
            self.logger.info("login_succeeded", account_id=saved.id)
            return LoginResult(account=saved, tokens=self.sessions.issue(saved))

        code, slot = issue_otp(now, timedelta(minutes=self.settings.otp_ttl_minutes))
        saved = await self.store.save(
            account.evolve(now, otp=slot, otp_verified=False, **changes)
        )
        self.logger.info("login_otp_issued", account_id=saved.id)
        await self._notify(
            "otp",
            saved,
            lambda: self.email.send_otp(
                saved.email, otp=code, ttl_minutes=self.settings.otp_ttl_minutes
            ),
        )
        return LoginResult(account=saved, otp_required=True)

    async def _record_failure(self, account: Account, now: datetime) -> Account:
        # Read-modify-write; concurrent failures may undercount
        previous = account.failed_login_attempts
        if account.locked_until is not None and account.locked_until <= now:
            # The last lock has lapsed, so this failure opens a new window
            previous = 0
        attempts = previous + 1
        changes = {"failed_login_attempts": attempts}
        if attempts >= self.settings.max_login_attempts:
            changes["locked_until"] = now + timedelta(minutes=self.settings.lockout_minutes)
        else:
            changes["locked_until"] = None
        saved = await self.store.save(account.evolve(now, **changes))
        self.logger.warning(
            "login_failed",
            account_id=account.id,
            attempts=attempts,
            locked=saved.locked_until is not None,
        )
        return saved

    async def verify_otp(self, account_id: str, code: str) -> Tuple[Account, TokenPair]:
        """Complete a login with the emailed one-time code.

        Raises:
            NotFoundError: unknown account id.
            InvalidOrExpiredOtpError: missing, expired, or wrong code.
        """
        now = self._now()
        account = await self._require_account(account_id)
        slot = account.otp
        if matches(slot, code, now, hashed=False):
            if not account.is_active:
                raise AccountNotActiveError("Account is not active", status_code=401)
            saved = await self.store.save(account.evolve(now, otp=None, otp_verified=True))
            self.logger.info("otp_verified", account_id=saved.id)
            return saved, self.sessions.issue(saved)

        if slot is not None:
            attempts = slot.attempts + 1
            if slot.is_expired(now) or attempts >= self.settings.otp_max_attempts:
                await self.store.save(account.evolve(now, otp=None))
                self.logger.warning(
                    "otp_discarded", account_id=account.id, expired=slot.is_expired(now)
                )
            else:
                await self.store.save(
                    account.evolve(now, otp=replace(slot, attempts=attempts))
                )
                self.logger.warning("otp_mismatch", account_id=account.id, attempts=attempts)
        raise InvalidOrExpiredOtpError()

    async def forgot_password(self, email: str) -> None:
        """Start a password reset; silent when the address is unknown.

        Raises:
            ServerError: the reset email could not be sent; the slot is restored.
        """
        now = self._now()
        account = await self.store.find_by_identity(email)
        if account is None or account.email != normalize_email(email):
            self.logger.info("password_reset_unknown_email")
            return
        previous = account.password_reset
        ttl_minutes = self.settings.password_reset_ttl_minutes
        clear, slot = issue_token(now, timedelta(minutes=ttl_minutes))
        saved = await self.store.save(account.evolve(now, password_reset=slot))
        try:
            await self.email.send_password_reset(
                saved.email, token=clear, ttl_minutes=ttl_minutes
            )
        except EmailDeliveryError as exc:
            await self.store.save(saved.evolve(self._now(), password_reset=previous))
            self.logger.error(
                "password_reset_email_failed", account_id=saved.id, error=str(exc)
            )
            raise ServerError("Email could not be sent") from exc
        self.logger.info("password_reset_requested", account_id=saved.id)

    async def reset_password(self, token: str, password: str) -> Account:
        """Consume a reset token and set a new password.

        Raises:
            InvalidOrExpiredTokenError: unknown, already used, or expired token.
        """
        now = self._now()
        account = await self.store.find_by_secret("password_reset", hash_token(token or ""))
        if account is None or not matches(account.password_reset, token, now, hashed=True):
            raise InvalidOrExpiredTokenError("Invalid or expired token")
        changes = {
            "password_hash": self.hasher.hash(password),
            "password_reset": None,
            "token_version": account.token_version + 1,
        }
        if not account.is_active:
            changes.update(is_active=True, email_verified=True)
        saved = await self.store.save(account.evolve(now, **changes))
        self.logger.info("password_reset_completed", account_id=saved.id)
        await self._notify(
            "password_changed",
            saved,
            lambda: self.email.send_password_changed(saved.email, username=saved.username),
        )
        return saved

    # Administration --------------------------------------------------------

    async def list_accounts(
        self,
        actor: Account,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> AccountPage:
        page = max(page or 1, 1)
        limit = min(max(limit or self.settings.default_page_size, 1), self.settings.max_page_size)
        account_filter = AccountFilter(
            search=search or None,
            role=role or None,
            is_active=is_active,
            exclude_roles=roles.hidden_roles(actor),
        )
        items, total = await self.store.list(account_filter, page, limit)
        return AccountPage(items=items, total=total, page=page, limit=limit)

    async def get_account(self, actor: Account, account_id: str) -> Account:
        target = await self._require_account(account_id)
        roles.ensure_can_manage(actor, target, action="view")
        return target

    async def create_account(
        self,
        actor: Account,
        *,
        username: str,
        email: str,
        password: str,
        role: str = roles.USER,
        is_active: bool = True,
    ) -> Account:
        """Create an account on an administrator's behalf.

        Raises:
            ForbiddenError: ``actor`` may not grant ``role``.
            ConflictError: username or email already taken.
        """
        roles.ensure_can_assign(actor, role)
        account = Account.new(
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            now=self._now(),
            role=role,
            is_active=is_active,
            email_verified=is_active,
        )
        try:
            created = await self.store.create(account)
        except ConstraintViolation as exc:
            raise self._conflict(
                exc, "User already exists with that email or username"
            ) from exc
        self.logger.info(
            "account_created_by_admin", account_id=created.id, actor_id=actor.id, role=role
        )
        if created.is_active:
            await self._notify(
                "welcome",
                created,
                lambda: self.email.send_welcome(created.email, username=created.username),
            )
        return created

    async def update_account(
        self,
        actor: Account,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Account:
        """Apply an administrator's edits to another account.

        Raises:
            NotFoundError: unknown account id.
            ForbiddenError: hierarchy or role-assignment violation.
            ConflictError: the new username or email is taken.
        """
        target = await self._require_account(account_id)
        roles.ensure_can_manage(actor, target, action="modify")

        changes = {}
        if role and role != target.role:
            roles.ensure_can_assign(actor, role)
            changes["role"] = role
        if username and username.strip() != target.username:
            changes["username"] = username.strip()
        if email and normalize_email(email) != target.email:
            changes["email"] = email
            changes["email_verified"] = False
        if is_active is not None and is_active != target.is_active:
            changes["is_active"] = is_active
        if not changes:
            return target

        try:
            saved = await self.store.save(target.evolve(self._now(), **changes))
        except ConstraintViolation as exc:
            raise self._conflict(exc, None) from exc
        self.logger.info(
            "account_updated_by_admin",
            account_id=saved.id,
            actor_id=actor.id,
            fields=sorted(changes),
        )
        if "is_active" in changes:
            await self._notify(
                "account_status",
                saved,
                lambda: self.email.send_account_status(
                    saved.email, username=saved.username, active=saved.is_active
                ),
            )
        return saved

    async def delete_account(self, actor: Account, account_id: str) -> Account:
        """Remove an account for good.

        Raises:
            ValidationError: ``actor`` targeted itself.
            NotFoundError: unknown account id.
            ForbiddenError: only a superadmin may delete admins.
        """
        if actor.id == account_id:
            roles.ensure_can_delete(actor, actor)
        target = await self._require_account(account_id)
        roles.ensure_can_delete(actor, target)
        await self.store.delete(target.id)
        self.logger.info("account_deleted_by_admin", account_id=target.id, actor_id=actor.id)
        await self._notify(
            "account_deleted",
            target,
            lambda: self.email.send_account_deleted(target.email, username=target.username),
        )
        return target

    async def admin_reset_password(
        self, actor: Account, account_id: str, password: Optional[str] = None
    ) -> AdminResetResult:
        """Set a temporary password without going through the reset-token flow."""
        target = await self._require_account(account_id)
        roles.ensure_can_manage(actor, target, action="reset the password of")
        temp_password = password or generate_password()
        saved = await self.store.save(
            target.evolve(
                self._now(),
                password_hash=self.hasher.hash(temp_password),
                password_reset=None,
                token_version=target.token_version + 1,
            )
        )
        self.logger.info("password_reset_by_admin", account_id=saved.id, actor_id=actor.id)
        sent = await self._notify(
            "admin_password_reset",
            saved,
            lambda: self.email.send_admin_password_reset(
                saved.email, username=saved.username, temp_password=temp_password
            ),
        )
        reveal = not sent or self.settings.test_mode
        return AdminResetResult(
            account=saved,
            email_sent=sent,
            temp_password=temp_password if reveal else None,
        )
