"""Unit tests for the account lifecycle service.

Covers registration and activation, login with lockout and OTP, password
recovery, and the administrator operations with their role rules.
"""

import pytest

from warden.service.accounts import AccountService
from warden.service.credentials import PasswordHasher
from warden.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredOtpError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from warden.service.sessions import SessionIssuer
from warden.storage.memory import MemoryStore
from warden.storage.models import Account

PASSWORD = "secret123"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return PasswordHasher()


def _build(store, hasher, settings, clock, mailer) -> AccountService:
    sessions = SessionIssuer(store, settings, clock=clock)
    return AccountService(store, hasher, sessions, mailer, settings, clock=clock)


@pytest.fixture
def service(store, hasher, settings, clock, mailer):
    return _build(store, hasher, settings, clock, mailer)


@pytest.fixture
def otp_service(store, hasher, settings, clock, mailer):
    return _build(store, hasher, settings.model_copy(update={"require_otp": True}), clock, mailer)


async def _seed(store, hasher, clock, username, *, role="user", is_active=True) -> Account:
    return await store.create(
        Account.new(
            username=username,
            email=f"{username}@example.com",
            password_hash=hasher.hash(PASSWORD),
            now=clock(),
            role=role,
            is_active=is_active,
            email_verified=is_active,
        )
    )


class TestRegistrationAndActivation:
    async def test_register_creates_pending_account_and_emails_link(self, service, mailer):
        account = await service.register(
            username="alice", email="Alice@Example.com", password=PASSWORD
        )
        assert account.is_active is False
        assert account.email == "alice@example.com"
        message = mailer.last("activation")
        assert message.to == "alice@example.com"
        token = message.variables["token"]
        assert message.variables["activationUrl"].endswith(f"/api/auth/activate/{token}")
        assert account.activation.value != token

    async def test_register_duplicate_is_conflict(self, service):
        await service.register(username="alice", email="alice@example.com", password=PASSWORD)
        with pytest.raises(ConflictError) as exc_info:
            await service.register(username="ALICE", email="new@example.com", password=PASSWORD)
        assert exc_info.value.message == "User already exists with that email or username"

    async def test_register_survives_email_outage(self, service, mailer, store):
        mailer.fail = True
        account = await service.register(
            username="alice", email="alice@example.com", password=PASSWORD
        )
        assert await store.find_by_id(account.id) is not None

    async def test_activation_is_single_use(self, service, mailer):
        await service.register(username="alice", email="alice@example.com", password=PASSWORD)
        token = mailer.last("activation").variables["token"]

        account, tokens = await service.activate(token)
        assert account.is_active and account.email_verified
        assert account.activation is None
        assert tokens.access_token

        with pytest.raises(InvalidOrExpiredTokenError) as exc_info:
            await service.activate(token)
        assert exc_info.value.message == "Invalid or expired activation token"

    async def test_activation_token_expires(self, service, mailer, clock):
        await service.register(username="alice", email="alice@example.com", password=PASSWORD)
        token = mailer.last("activation").variables["token"]
        clock.advance(hours=24)
        with pytest.raises(InvalidOrExpiredTokenError):
            await service.activate(token)

    async def test_unknown_activation_token(self, service):
        with pytest.raises(InvalidOrExpiredTokenError):
            await service.activate("0" * 40)


class TestLogin:
    async def test_login_by_email_or_username(self, service, store, hasher, clock):
        seeded = await _seed(store, hasher, clock, "alice")
        by_email = await service.login("alice@example.com", PASSWORD)
        by_name = await service.login("alice", PASSWORD)
        assert by_email.account.id == by_name.account.id == seeded.id
        assert by_email.tokens is not None
        assert by_email.account.last_login == clock()

    async def test_unknown_identity(self, service):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await service.login("ghost@example.com", PASSWORD)
        assert exc_info.value.message == "Invalid credentials"

    async def test_inactive_account_rejected_after_password_check(self, service, store, hasher, clock):
        await _seed(store, hasher, clock, "alice", is_active=False)
        with pytest.raises(AccountNotActiveError) as exc_info:
            await service.login("alice@example.com", PASSWORD)
        assert exc_info.value.status_code == 401
        assert "activation link" in exc_info.value.message

        with pytest.raises(InvalidCredentialsError):
            await service.login("alice@example.com", "wrong-password")

    async def test_lockout_after_max_failures(self, service, store, hasher, clock):
        seeded = await _seed(store, hasher, clock, "alice")
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await service.login("alice@example.com", "wrong-password")
        current = await store.find_by_id(seeded.id)
        assert current.failed_login_attempts == 4
        assert current.locked_until is None

        with pytest.raises(InvalidCredentialsError):
            await service.login("alice@example.com", "wrong-password")

        # Even the right password is refused while locked
        with pytest.raises(AccountLockedError) as exc_info:
            await service.login("alice@example.com", PASSWORD)
        assert "lockedUntil" in exc_info.value.detail
        assert exc_info.value.status_code == 401

    async def test_lock_lapses_and_success_resets_counter(self, service, store, hasher, clock):
        seeded = await _seed(store, hasher, clock, "alice")
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await service.login("alice@example.com", "wrong-password")
        clock.advance(minutes=15)

        result = await service.login("alice@example.com", PASSWORD)
        assert result.tokens is not None
        current = await store.find_by_id(seeded.id)
        assert current.failed_login_attempts == 0
        assert current.locked_until is None

    async def test_failure_after_lapsed_lock_starts_new_count(self, service, store, hasher, clock):
        seeded = await _seed(store, hasher, clock, "alice")
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await service.login("alice@example.com", "wrong-password")
        clock.advance(minutes=16)

        with pytest.raises(InvalidCredentialsError):
            await service.login("alice@example.com", "wrong-password")
        current = await store.find_by_id(seeded.id)
        assert current.failed_login_attempts == 1
        assert current.locked_until is None


class TestOtpLogin:
    async def test_password_then_code(self, otp_service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice")
        result = await otp_service.login("alice@example.com", PASSWORD)
        assert result.otp_required is True
        assert result.tokens is None

        code = mailer.last("otp").variables["otp"]
        account, tokens = await otp_service.verify_otp(seeded.id, code)
        assert account.otp is None
        assert account.otp_verified is True
        assert tokens.refresh_token

        with pytest.raises(InvalidOrExpiredOtpError):
            await otp_service.verify_otp(seeded.id, code)

    async def test_wrong_codes_exhaust_the_slot(self, otp_service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice")
        await otp_service.login("alice@example.com", PASSWORD)
        code = mailer.last("otp").variables["otp"]
        wrong = "000000" if code != "000000" else "111111"

        for attempt in range(1, 5):
            with pytest.raises(InvalidOrExpiredOtpError):
                await otp_service.verify_otp(seeded.id, wrong)
            assert (await store.find_by_id(seeded.id)).otp.attempts == attempt

        with pytest.raises(InvalidOrExpiredOtpError):
            await otp_service.verify_otp(seeded.id, wrong)
        assert (await store.find_by_id(seeded.id)).otp is None
        with pytest.raises(InvalidOrExpiredOtpError):
            await otp_service.verify_otp(seeded.id, code)

    async def test_expired_code_discarded(self, otp_service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice")
        await otp_service.login("alice@example.com", PASSWORD)
        code = mailer.last("otp").variables["otp"]
        clock.advance(minutes=10)
        with pytest.raises(InvalidOrExpiredOtpError):
            await otp_service.verify_otp(seeded.id, code)
        assert (await store.find_by_id(seeded.id)).otp is None

    async def test_unknown_user(self, otp_service):
        with pytest.raises(NotFoundError) as exc_info:
            await otp_service.verify_otp("missing", "123456")
        assert exc_info.value.message == "User not found"


class TestPasswordRecovery:
    async def test_unknown_email_is_silent(self, service, mailer):
        await service.forgot_password("ghost@example.com")
        assert mailer.outbox == []

    async def test_username_does_not_start_a_reset(self, service, store, hasher, clock, mailer):
        await _seed(store, hasher, clock, "alice")
        await service.forgot_password("alice")
        assert mailer.sent("password-reset") == []

    async def test_reset_flow(self, service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice")
        issued = service.sessions.issue(seeded)

        await service.forgot_password("alice@example.com")
        message = mailer.last("password-reset")
        token = message.variables["token"]
        assert message.variables["resetUrl"].endswith(f"/api/auth/reset-password/{token}")

        account = await service.reset_password(token, "brand-new-pass")
        assert account.password_reset is None
        assert account.token_version == seeded.token_version + 1
        assert mailer.last("password-changed").to == "alice@example.com"

        assert (await service.login("alice@example.com", "brand-new-pass")).tokens
        with pytest.raises(InvalidCredentialsError):
            await service.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidOrExpiredTokenError) as exc_info:
            await service.reset_password(token, "another-pass")
        assert exc_info.value.message == "Invalid or expired token"
        # Sessions from before the reset can no longer refresh
        with pytest.raises(AuthenticationError):
            await service.sessions.rotate(issued.refresh_token)

    async def test_reset_activates_pending_account(self, service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice", is_active=False)
        await service.forgot_password("alice@example.com")
        token = mailer.last("password-reset").variables["token"]
        account = await service.reset_password(token, "brand-new-pass")
        assert account.id == seeded.id
        assert account.is_active and account.email_verified

    async def test_reset_token_expires(self, service, store, hasher, clock, mailer):
        await _seed(store, hasher, clock, "alice")
        await service.forgot_password("alice@example.com")
        token = mailer.last("password-reset").variables["token"]
        clock.advance(minutes=60)
        with pytest.raises(InvalidOrExpiredTokenError):
            await service.reset_password(token, "brand-new-pass")

    async def test_newer_request_replaces_older_token(self, service, store, hasher, clock, mailer):
        await _seed(store, hasher, clock, "alice")
        await service.forgot_password("alice@example.com")
        first = mailer.last("password-reset").variables["token"]
        await service.forgot_password("alice@example.com")
        second = mailer.last("password-reset").variables["token"]
        with pytest.raises(InvalidOrExpiredTokenError):
            await service.reset_password(first, "brand-new-pass")
        await service.reset_password(second, "brand-new-pass")

    async def test_email_failure_rolls_back_slot(self, service, store, hasher, clock, mailer):
        seeded = await _seed(store, hasher, clock, "alice")
        mailer.fail = True
        with pytest.raises(ServerError) as exc_info:
            await service.forgot_password("alice@example.com")
        assert exc_info.value.message == "Email could not be sent"
        assert exc_info.value.status_code == 500
        assert (await store.find_by_id(seeded.id)).password_reset is None


class TestAdministration:
    async def test_listing_hides_superadmins_from_admins(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        root = await _seed(store, hasher, clock, "root", role="superadmin")
        await _seed(store, hasher, clock, "alice")

        page = await service.list_accounts(admin)
        assert page.total == 2
        assert "root" not in {a.username for a in page.items}

        page = await service.list_accounts(root)
        assert page.total == 3

    async def test_listing_clamps_limit_and_counts_pages(self, service, store, hasher, clock):
        root = await _seed(store, hasher, clock, "root", role="superadmin")
        for name in ("alice", "bob", "dave"):
            await _seed(store, hasher, clock, name)
        page = await service.list_accounts(root, limit=1000)
        assert page.limit == 100
        page = await service.list_accounts(root, limit=3, page=2)
        assert page.total == 4
        assert page.pages == 2
        assert len(page.items) == 1

    async def test_admin_cannot_view_superadmin(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        root = await _seed(store, hasher, clock, "root", role="superadmin")
        with pytest.raises(ForbiddenError):
            await service.get_account(admin, root.id)
        with pytest.raises(NotFoundError):
            await service.get_account(admin, "missing")

    async def test_create_active_account_sends_welcome(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        created = await service.create_account(
            admin, username="alice", email="alice@example.com", password=PASSWORD
        )
        assert created.is_active and created.email_verified
        assert mailer.last("welcome").to == "alice@example.com"
        assert (await service.login("alice", PASSWORD)).tokens

    async def test_create_inactive_account_sends_nothing(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        created = await service.create_account(
            admin,
            username="alice",
            email="alice@example.com",
            password=PASSWORD,
            is_active=False,
        )
        assert not created.is_active and not created.email_verified
        assert mailer.sent("welcome") == []

    async def test_admin_cannot_create_superadmin(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        with pytest.raises(ForbiddenError):
            await service.create_account(
                admin,
                username="alice",
                email="alice@example.com",
                password=PASSWORD,
                role="superadmin",
            )

    async def test_create_duplicate_is_conflict(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        with pytest.raises(ConflictError):
            await service.create_account(
                admin, username="carol2", email="carol@example.com", password=PASSWORD
            )

    async def test_update_email_clears_verification(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        updated = await service.update_account(admin, alice.id, email="Alice@New.example.com")
        assert updated.email == "alice@new.example.com"
        assert updated.email_verified is False

    async def test_update_to_taken_username(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        await _seed(store, hasher, clock, "bob")
        with pytest.raises(ConflictError) as exc_info:
            await service.update_account(admin, alice.id, username="bob")
        assert exc_info.value.message == "Username is already taken"

    async def test_deactivation_notifies_user(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        updated = await service.update_account(admin, alice.id, is_active=False)
        assert updated.is_active is False
        assert mailer.last("account-deactivated").to == "alice@example.com"

    async def test_noop_update_changes_nothing(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        clock.advance(minutes=1)
        updated = await service.update_account(admin, alice.id, username="alice", is_active=True)
        assert updated.updated_at == alice.updated_at
        assert mailer.outbox == []

    async def test_admin_cannot_modify_superadmin(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        root = await _seed(store, hasher, clock, "root", role="superadmin")
        with pytest.raises(ForbiddenError) as exc_info:
            await service.update_account(admin, root.id, is_active=False)
        assert exc_info.value.message == "Not authorized to modify this user"

    async def test_admin_cannot_promote_to_superadmin(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        with pytest.raises(ForbiddenError):
            await service.update_account(admin, alice.id, role="superadmin")

    async def test_delete_rules(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        other_admin = await _seed(store, hasher, clock, "erin", role="admin")
        alice = await _seed(store, hasher, clock, "alice")

        with pytest.raises(ValidationError):
            await service.delete_account(admin, admin.id)
        with pytest.raises(ForbiddenError):
            await service.delete_account(admin, other_admin.id)
        with pytest.raises(NotFoundError):
            await service.delete_account(admin, "missing")

        await service.delete_account(admin, alice.id)
        assert await store.find_by_id(alice.id) is None
        assert mailer.last("account-deleted").to == "alice@example.com"

    async def test_admin_password_reset(self, service, store, hasher, clock, mailer):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")
        before = service.sessions.issue(alice)

        result = await service.admin_reset_password(admin, alice.id)
        assert result.email_sent is True
        # Test mode exposes the temporary password
        assert result.temp_password
        assert mailer.last("admin-password-reset").variables["tempPassword"] == result.temp_password
        assert (await service.login("alice", result.temp_password)).tokens
        with pytest.raises(AuthenticationError):
            await service.sessions.rotate(before.refresh_token)

    async def test_admin_password_reset_hides_password_when_emailed(
        self, store, hasher, settings, clock, mailer
    ):
        service = _build(
            store, hasher, settings.model_copy(update={"test_mode": False}), clock, mailer
        )
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        alice = await _seed(store, hasher, clock, "alice")

        result = await service.admin_reset_password(admin, alice.id, "chosen-password")
        assert result.email_sent is True
        assert result.temp_password is None

        mailer.fail = True
        result = await service.admin_reset_password(admin, alice.id)
        assert result.email_sent is False
        assert result.temp_password

    async def test_admin_cannot_reset_superadmin(self, service, store, hasher, clock):
        admin = await _seed(store, hasher, clock, "carol", role="admin")
        root = await _seed(store, hasher, clock, "root", role="superadmin")
        with pytest.raises(ForbiddenError) as exc_info:
            await service.admin_reset_password(admin, root.id)
        assert exc_info.value.message == "Not authorized to reset the password of this user"
