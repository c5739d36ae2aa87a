"""Shared storage contract and helpers for the memory and postgres backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, normalize_email

SECRET_SLOTS = ("activation", "password_reset")


@dataclass(frozen=True)
class AccountFilter:
    search: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    exclude_roles: Tuple[str, ...] = field(default_factory=tuple)

    def matches(self, account: Account) -> bool:
        if self.search:
            needle = self.search.lower()
            if needle not in account.username.lower() and needle not in account.email:
                return False
        if self.role and account.role != self.role:
            return False
        if self.is_active is not None and account.is_active != self.is_active:
            return False
        if account.role in self.exclude_roles:
            return False
        return True


class AccountStore(Protocol):
    async def find_by_identity(
        self, identity: str, *, with_credentials: bool = False
    ) -> Optional[Account]: ...

    async def find_by_id(
        self, account_id: str, *, with_credentials: bool = False
    ) -> Optional[Account]: ...

    async def find_by_secret(self, slot: str, value: str) -> Optional[Account]: ...

    async def create(self, account: Account) -> Account: ...

    async def save(self, account: Account) -> Account: ...

    async def delete(self, account_id: str) -> bool: ...

    async def list(
        self, account_filter: AccountFilter, page: int, limit: int
    ) -> Tuple[List[Account], int]: ...


def check_identity_unique(account: Account, others: Iterable[Account]) -> None:
    """Raise ``ConstraintViolation`` if another record shares a username or email."""
    email = normalize_email(account.email)
    username = account.username.lower()
    for other in others:
        if other.id == account.id:
            continue
        if other.email == email:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if other.username.lower() == username:
            raise ConstraintViolation("username already exists", {"field": "username"})


def check_secret_slot(slot: str) -> None:
    if slot not in SECRET_SLOTS:
        raise ValueError(f"unsupported secret slot: {slot}")


def paginate(items: Sequence[Account], page: int, limit: int) -> List[Account]:
    start = max(page - 1, 0) * limit
    return list(items[start : start + limit])
