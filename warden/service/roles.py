"""Role hierarchy and the rules layered on top of it.

Every comparison between roles goes through :func:`rank` so the ordering
``superadmin > admin > user`` lives in one place.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from warden.service.errors import ForbiddenError, ValidationError
from warden.storage.models import ROLES, Account

USER = "user"
ADMIN = "admin"
SUPERADMIN = "superadmin"

_RANKS = {USER: 1, ADMIN: 2, SUPERADMIN: 3}

ADMIN_ROLES = (ADMIN, SUPERADMIN)


def rank(role: str) -> int:
    """Ordinal of ``role``; unknown roles rank below every real one."""
    return _RANKS.get(role, 0)


def require_role(account: Account, allowed: Iterable[str]) -> Account:
    allowed = tuple(allowed)
    if account.role not in allowed:
        raise ForbiddenError(
            f"User role {account.role} is not authorized to access this resource",
            detail={"required": list(allowed)},
        )
    return account


def assignable_roles(actor: Account) -> Tuple[str, ...]:
    if actor.role == SUPERADMIN:
        return ROLES
    if actor.role == ADMIN:
        return tuple(r for r in ROLES if rank(r) <= rank(ADMIN))
    return ()


def ensure_can_assign(actor: Account, role: str) -> None:
    if role not in assignable_roles(actor):
        raise ForbiddenError(
            f"You don't have permission to assign the role: {role}",
            detail={"role": role},
        )


def ensure_can_manage(actor: Account, target: Account, *, action: str = "modify") -> None:
    """Only a superadmin may view, modify, or reset a superadmin."""
    if rank(target.role) >= rank(SUPERADMIN) and rank(actor.role) < rank(SUPERADMIN):
        raise ForbiddenError(f"Not authorized to {action} this user")


def ensure_can_delete(actor: Account, target: Account) -> None:
    if actor.id == target.id:
        raise ValidationError("You cannot delete your own account")
    if rank(target.role) >= rank(ADMIN) and rank(actor.role) < rank(SUPERADMIN):
        raise ForbiddenError("Not authorized to delete this user")


def hidden_roles(actor: Account) -> Tuple[str, ...]:
    """Roles a listing must leave out for ``actor``."""
    if rank(actor.role) >= rank(SUPERADMIN):
        return ()
    return (SUPERADMIN,)
