from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from warden.logging import get_logger
from warden.storage.common import AccountFilter, check_secret_slot
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, OneTimeSecret, normalize_email

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin', 'superadmin')),
    is_active BOOLEAN NOT NULL DEFAULT FALSE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    activation_hash TEXT,
    activation_expires_at TIMESTAMPTZ,
    reset_hash TEXT,
    reset_expires_at TIMESTAMPTZ,
    otp_code TEXT,
    otp_expires_at TIMESTAMPTZ,
    otp_attempts INTEGER NOT NULL DEFAULT 0,
    otp_verified BOOLEAN NOT NULL DEFAULT FALSE,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    token_version INTEGER NOT NULL DEFAULT 0,
    last_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS account_username_key ON account (lower(username));
CREATE UNIQUE INDEX IF NOT EXISTS account_email_key ON account (lower(email));
CREATE INDEX IF NOT EXISTS account_activation_hash_idx ON account (activation_hash);
CREATE INDEX IF NOT EXISTS account_reset_hash_idx ON account (reset_hash);
"""

_SLOT_COLUMNS = {
    "activation": "activation_hash",
    "password_reset": "reset_hash",
}

_COLUMNS = (
    "id, username, email, role, is_active, email_verified, activation_hash, "
    "activation_expires_at, reset_hash, reset_expires_at, otp_code, otp_expires_at, "
    "otp_attempts, otp_verified, failed_login_attempts, locked_until, token_version, "
    "last_login, created_at, updated_at"
)


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    field = "username" if "username" in constraint else "email"
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _slot(value: Optional[str], expires_at: Any, attempts: int = 0) -> Optional[OneTimeSecret]:
    if value is None or expires_at is None:
        return None
    return OneTimeSecret(value=value, expires_at=expires_at, attempts=attempts or 0)


def _row_to_account(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row.get("password_hash"),
        role=row.get("role", "user"),
        is_active=row.get("is_active", False),
        email_verified=row.get("email_verified", False),
        activation=_slot(row.get("activation_hash"), row.get("activation_expires_at")),
        password_reset=_slot(row.get("reset_hash"), row.get("reset_expires_at")),
        otp=_slot(row.get("otp_code"), row.get("otp_expires_at"), row.get("otp_attempts", 0)),
        otp_verified=row.get("otp_verified", False),
        failed_login_attempts=row.get("failed_login_attempts", 0),
        locked_until=row.get("locked_until"),
        token_version=row.get("token_version", 0),
        last_login=row.get("last_login"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _account_params(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "username": account.username,
        "email": normalize_email(account.email),
        "password_hash": account.password_hash,
        "role": account.role,
        "is_active": account.is_active,
        "email_verified": account.email_verified,
        "activation_hash": account.activation.value if account.activation else None,
        "activation_expires_at": account.activation.expires_at if account.activation else None,
        "reset_hash": account.password_reset.value if account.password_reset else None,
        "reset_expires_at": account.password_reset.expires_at if account.password_reset else None,
        "otp_code": account.otp.value if account.otp else None,
        "otp_expires_at": account.otp.expires_at if account.otp else None,
        "otp_attempts": account.otp.attempts if account.otp else 0,
        "otp_verified": account.otp_verified,
        "failed_login_attempts": account.failed_login_attempts,
        "locked_until": account.locked_until,
        "token_version": account.token_version,
        "last_login": account.last_login,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }


class PostgresStore:
    """Postgres-backed account store on an async psycopg pool.

    ``open()`` must be awaited before use; it also creates the schema when
    missing.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_schema()
        self.logger.info("postgres_store_opened", max_size=self.pool.max_size)

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def _ensure_schema(self) -> None:
        async with self._connect() as conn:
            await conn.execute(_SCHEMA)

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def _fetch_one(self, query: str, params: Tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def find_by_identity(
        self, identity: str, *, with_credentials: bool = False
    ) -> Optional[Account]:
        columns = _COLUMNS + (", password_hash" if with_credentials else "")
        needle = identity.strip()
        row = await self._fetch_one(
            f"SELECT {columns} FROM account WHERE lower(email) = %s OR lower(username) = %s LIMIT 1",
            (normalize_email(needle), needle.lower()),
        )
        return _row_to_account(row) if row else None

    async def find_by_id(
        self, account_id: str, *, with_credentials: bool = False
    ) -> Optional[Account]:
        try:
            uuid.UUID(account_id)
        except ValueError:
            return None
        columns = _COLUMNS + (", password_hash" if with_credentials else "")
        row = await self._fetch_one(
            f"SELECT {columns} FROM account WHERE id = %s", (account_id,)
        )
        return _row_to_account(row) if row else None

    async def find_by_secret(self, slot: str, value: str) -> Optional[Account]:
        check_secret_slot(slot)
        column = _SLOT_COLUMNS[slot]
        row = await self._fetch_one(
            f"SELECT {_COLUMNS} FROM account WHERE {column} = %s LIMIT 1", (value,)
        )
        return _row_to_account(row) if row else None

    async def create(self, account: Account) -> Account:
        params = _account_params(account)
        names = ", ".join(params)
        placeholders = ", ".join(f"%({name})s" for name in params)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    f"INSERT INTO account ({names}) VALUES ({placeholders})", params
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return account.without_credentials()

    async def save(self, account: Account) -> Account:
        params = _account_params(account)
        assignments = ", ".join(
            f"{name} = %({name})s"
            for name in params
            if name not in {"id", "created_at", "password_hash"}
        )
        assignments += ", password_hash = COALESCE(%(password_hash)s, password_hash)"
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    f"UPDATE account SET {assignments} WHERE id = %(id)s", params
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("account does not exist", {"field": "id"})
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return account.without_credentials()

    async def delete(self, account_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    async def list(
        self, account_filter: AccountFilter, page: int, limit: int
    ) -> Tuple[List[Account], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if account_filter.search:
            clauses.append("(username ILIKE %s OR email ILIKE %s)")
            pattern = "%" + _escape_like(account_filter.search) + "%"
            params.extend([pattern, pattern])
        if account_filter.role:
            clauses.append("role = %s")
            params.append(account_filter.role)
        if account_filter.is_active is not None:
            clauses.append("is_active = %s")
            params.append(account_filter.is_active)
        if account_filter.exclude_roles:
            clauses.append("role <> ALL(%s)")
            params.append(list(account_filter.exclude_roles))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = max(page - 1, 0) * limit
        async with self._connect() as conn:
            cur = await conn.execute(f"SELECT count(*) AS total FROM account {where}", params)
            total_row = await cur.fetchone()
            cur = await conn.execute(
                f"SELECT {_COLUMNS} FROM account {where} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            )
            rows = await cur.fetchall()
        return [_row_to_account(r) for r in rows], int(total_row["total"]) if total_row else 0


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
