"""Integration tests for the administrator endpoints.

Accounts are seeded straight into the runtime store; every request after that
goes through the HTTP API with a bearer token.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime
from warden.storage.models import Account, utc_now

PASSWORD = "secret123"


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app_module.app)


def _seed(username: str, *, role: str = "user", is_active: bool = True) -> Account:
    runtime = get_runtime()
    account = Account.new(
        username=username,
        email=f"{username}@example.com",
        password_hash=runtime.hasher.hash(PASSWORD),
        now=utc_now(),
        role=role,
        is_active=is_active,
        email_verified=is_active,
    )
    return asyncio.run(runtime.store.create(account))


def _auth(account: Account) -> dict:
    token = get_runtime().sessions.issue(account).access_token
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin():
    return _seed("carol", role="admin")


@pytest.fixture
def superadmin():
    return _seed("root", role="superadmin")


class TestAccess:
    """Only admins and superadmins reach /api/admin."""

    def test_requires_token(self, client):
        response = client.get("/api/admin/users")
        assert response.status_code == 401
        assert response.json()["message"] == "Not authorized, no token"

    def test_plain_user_forbidden(self, client):
        user = _seed("alice")
        response = client.get("/api/admin/users", headers=_auth(user))
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"
        assert response.json()["message"] == (
            "User role user is not authorized to access this resource"
        )

    def test_deactivated_admin_forbidden(self, client):
        former = _seed("former", role="admin", is_active=False)
        response = client.get("/api/admin/users", headers=_auth(former))
        assert response.status_code == 403
        assert response.json()["code"] == "account_not_active"


class TestListUsers:
    def test_admin_listing_hides_superadmins(self, client, admin, superadmin):
        _seed("alice")
        _seed("bob", is_active=False)

        response = client.get("/api/admin/users", headers=_auth(admin))
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["count"] == 3
        assert body["pagination"] == {"total": 3, "pages": 1, "currentPage": 1, "limit": 10}
        usernames = {u["username"] for u in body["users"]}
        assert usernames == {"carol", "alice", "bob"}
        for user in body["users"]:
            assert set(user) == {
                "id",
                "username",
                "email",
                "role",
                "isActive",
                "emailVerified",
                "lastLogin",
                "createdAt",
                "updatedAt",
            }

        response = client.get("/api/admin/users", headers=_auth(superadmin))
        assert response.json()["pagination"]["total"] == 4

    def test_filters_and_paging(self, client, admin):
        for name in ("alice", "alan", "bob"):
            _seed(name)
        _seed("dormant", is_active=False)
        headers = _auth(admin)

        response = client.get("/api/admin/users?search=al", headers=headers)
        assert {u["username"] for u in response.json()["users"]} == {"alice", "alan"}

        response = client.get("/api/admin/users?isActive=false", headers=headers)
        assert [u["username"] for u in response.json()["users"]] == ["dormant"]

        response = client.get("/api/admin/users?role=admin", headers=headers)
        assert [u["username"] for u in response.json()["users"]] == ["carol"]

        response = client.get("/api/admin/users?limit=2&page=3", headers=headers)
        body = response.json()
        assert body["pagination"] == {"total": 5, "pages": 3, "currentPage": 3, "limit": 2}
        assert body["count"] == 1

    def test_invalid_role_filter(self, client, admin):
        response = client.get("/api/admin/users?role=owner", headers=_auth(admin))
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"


class TestGetUser:
    def test_get_user(self, client, admin):
        alice = _seed("alice")
        response = client.get(f"/api/admin/users/{alice.id}", headers=_auth(admin))
        assert response.status_code == 200
        assert response.json()["user"]["email"] == "alice@example.com"

    def test_unknown_user(self, client, admin):
        response = client.get("/api/admin/users/does-not-exist", headers=_auth(admin))
        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    def test_admin_cannot_view_superadmin(self, client, admin, superadmin):
        response = client.get(f"/api/admin/users/{superadmin.id}", headers=_auth(admin))
        assert response.status_code == 403
        assert response.json()["message"] == "Not authorized to view this user"


class TestCreateUser:
    def test_create_active_user(self, client, admin, mailer):
        response = client.post(
            "/api/admin/users",
            headers=_auth(admin),
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "User created successfully"
        assert body["user"]["role"] == "user"
        assert body["user"]["isActive"] is True
        assert mailer.last("welcome").to == "alice@example.com"

        login = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200

    def test_create_inactive_admin(self, client, admin):
        response = client.post(
            "/api/admin/users",
            headers=_auth(admin),
            json={
                "username": "dave",
                "email": "dave@example.com",
                "password": PASSWORD,
                "role": "admin",
                "isActive": False,
            },
        )
        assert response.status_code == 201
        assert response.json()["user"]["role"] == "admin"
        assert response.json()["user"]["isActive"] is False

    def test_admin_cannot_create_superadmin(self, client, admin):
        response = client.post(
            "/api/admin/users",
            headers=_auth(admin),
            json={
                "username": "dave",
                "email": "dave@example.com",
                "password": PASSWORD,
                "role": "superadmin",
            },
        )
        assert response.status_code == 403
        assert response.json()["message"] == (
            "You don't have permission to assign the role: superadmin"
        )

    def test_superadmin_can_create_superadmin(self, client, superadmin):
        response = client.post(
            "/api/admin/users",
            headers=_auth(superadmin),
            json={
                "username": "root2",
                "email": "root2@example.com",
                "password": PASSWORD,
                "role": "superadmin",
            },
        )
        assert response.status_code == 201

    def test_duplicate(self, client, admin):
        response = client.post(
            "/api/admin/users",
            headers=_auth(admin),
            json={"username": "carol", "email": "new@example.com", "password": PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "conflict"


class TestUpdateUser:
    def test_update_fields(self, client, admin, mailer):
        alice = _seed("alice")
        response = client.put(
            f"/api/admin/users/{alice.id}",
            headers=_auth(admin),
            json={"email": "alice@new.example.com", "role": "admin", "isActive": False},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "User updated successfully"
        assert body["user"]["email"] == "alice@new.example.com"
        assert body["user"]["emailVerified"] is False
        assert body["user"]["role"] == "admin"
        assert body["user"]["isActive"] is False
        assert mailer.last("account-deactivated").to == "alice@new.example.com"

    def test_taken_email(self, client, admin):
        alice = _seed("alice")
        _seed("bob")
        response = client.put(
            f"/api/admin/users/{alice.id}",
            headers=_auth(admin),
            json={"email": "bob@example.com"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Email is already registered"

    def test_admin_cannot_modify_superadmin(self, client, admin, superadmin):
        response = client.put(
            f"/api/admin/users/{superadmin.id}",
            headers=_auth(admin),
            json={"isActive": False},
        )
        assert response.status_code == 403


class TestDeleteUser:
    def test_delete_user(self, client, admin, mailer):
        alice = _seed("alice")
        headers = _auth(admin)
        response = client.delete(f"/api/admin/users/{alice.id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["message"] == "User deleted successfully"
        assert client.get(f"/api/admin/users/{alice.id}", headers=headers).status_code == 404
        assert mailer.last("account-deleted").to == "alice@example.com"

    def test_cannot_delete_self(self, client, admin):
        response = client.delete(f"/api/admin/users/{admin.id}", headers=_auth(admin))
        assert response.status_code == 400
        assert response.json()["message"] == "You cannot delete your own account"

    def test_admin_cannot_delete_admin(self, client, admin):
        other = _seed("erin", role="admin")
        response = client.delete(f"/api/admin/users/{other.id}", headers=_auth(admin))
        assert response.status_code == 403

    def test_superadmin_deletes_admin(self, client, admin, superadmin):
        response = client.delete(f"/api/admin/users/{admin.id}", headers=_auth(superadmin))
        assert response.status_code == 200


class TestResetPassword:
    def test_generated_temporary_password(self, client, admin, mailer):
        alice = _seed("alice")
        response = client.post(
            f"/api/admin/users/{alice.id}/reset-password", headers=_auth(admin)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Password reset successful"
        temp_password = body["tempPassword"]
        assert mailer.last("admin-password-reset").variables["tempPassword"] == temp_password

        login = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": temp_password}
        )
        assert login.status_code == 200

    def test_chosen_password_and_email_failure(self, client, admin, mailer):
        alice = _seed("alice")
        mailer.fail = True
        response = client.post(
            f"/api/admin/users/{alice.id}/reset-password",
            headers=_auth(admin),
            json={"password": "chosen-pass"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Password reset successful but failed to send email."
        assert body["tempPassword"] == "chosen-pass"

    def test_admin_cannot_reset_superadmin(self, client, admin, superadmin):
        response = client.post(
            f"/api/admin/users/{superadmin.id}/reset-password", headers=_auth(admin)
        )
        assert response.status_code == 403
