from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from warden.logging import get_logger
from warden.storage.common import (
    AccountFilter,
    check_identity_unique,
    check_secret_slot,
    paginate,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Account,
    account_from_dict,
    account_to_dict,
    normalize_email,
)


class MemoryStore:
    """In-process account store for tests and single-node development.

    When ``fs_root`` is given the full state is snapshotted to
    ``<fs_root>/state/accounts.json`` after every write and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can be called while a write already holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [account_to_dict(a) for a in self.accounts.values()]}
        path = self._state_path()
        # Readers only ever see the previous snapshot or the complete new one
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix="accounts_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            entry["id"]: account_from_dict(entry) for entry in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _view(account: Account, with_credentials: bool) -> Account:
        return account if with_credentials else account.without_credentials()

    async def find_by_identity(
        self, identity: str, *, with_credentials: bool = False
    ) -> Optional[Account]:
        needle = identity.strip()
        email = normalize_email(needle)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email or account.username.lower() == needle.lower():
                    return self._view(account, with_credentials)
        return None

    async def find_by_id(
        self, account_id: str, *, with_credentials: bool = False
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
        return self._view(account, with_credentials) if account else None

    async def find_by_secret(self, slot: str, value: str) -> Optional[Account]:
        check_secret_slot(slot)
        with self._data_lock:
            for account in self.accounts.values():
                secret = getattr(account, slot)
                if secret is not None and secret.value == value:
                    return account.without_credentials()
        return None

    async def create(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account already exists", {"field": "id"})
            check_identity_unique(account, self.accounts.values())
            self.accounts[account.id] = account
            self._persist_state()
        return account.without_credentials()

    async def save(self, account: Account) -> Account:
        with self._data_lock:
            existing = self.accounts.get(account.id)
            if existing is None:
                raise ConstraintViolation("account does not exist", {"field": "id"})
            check_identity_unique(account, self.accounts.values())
            if account.password_hash is None:
                account = replace(account, password_hash=existing.password_hash)
            self.accounts[account.id] = account
            self._persist_state()
        return account.without_credentials()

    async def delete(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed is not None:
                self._persist_state()
        return removed is not None

    async def list(
        self, account_filter: AccountFilter, page: int, limit: int
    ) -> Tuple[List[Account], int]:
        with self._data_lock:
            matched = [a for a in self.accounts.values() if account_filter.matches(a)]
        matched.sort(key=lambda a: a.created_at, reverse=True)
        items = [a.without_credentials() for a in paginate(matched, page, limit)]
        return items, len(matched)

    def verify_connection(self) -> None:
        """Memory store is always reachable."""
        return None
