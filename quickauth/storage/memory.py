from __future__ import annotations

import copy
import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from quickauth.logging import get_logger
from quickauth.service.lockout import LockoutPolicy
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.models import (
    Account,
    LockoutState,
    PendingSecret,
    SecretKind,
    account_from_record,
    account_to_record,
)


class MemoryStore:
    """In-process account store for tests and local development.

    Every read returns a copy, so callers mutate their own object and must
    write it back through ``update_account``. When ``state_path`` is given the
    accounts are persisted to a JSON file after every write.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        self._load_state()

    # ---- persistence -------------------------------------------------

    def _load_state(self) -> bool:
        if not self.state_path or not self.state_path.exists():
            return False
        try:
            raw = json.loads(self.state_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error(
                "memory_store_load_failed", path=str(self.state_path), error=str(exc)
            )
            return False
        for record in raw.get("accounts", []):
            account = account_from_record(record)
            self.accounts[account.id] = account
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"accounts": [account_to_record(a) for a in self.accounts.values()]}
        tmp_path = self.state_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        os.replace(tmp_path, self.state_path)

    # ---- helpers -----------------------------------------------------

    @staticmethod
    def _copy(account: Account, *, with_password: bool) -> Account:
        clone = copy.deepcopy(account)
        if not with_password:
            clone.password_hash = None
        return clone

    def _check_unique(self, account: Account) -> None:
        email = account.email.lower()
        for existing in self.accounts.values():
            if existing.id == account.id:
                continue
            if existing.email.lower() == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.phone and existing.phone == account.phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    # ---- accounts ----------------------------------------------------

    def insert_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            self._check_unique(account)
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return self._copy(account, with_password=False)

    def get_account(
        self, account_id: str, *, with_password: bool = False
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy(account, with_password=with_password) if account else None

    def find_account_by_email(
        self,
        email: str,
        *,
        with_password: bool = False,
        include_inactive: bool = False,
    ) -> Optional[Account]:
        needle = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email.lower() != needle:
                    continue
                if not account.is_active and not include_inactive:
                    return None
                return self._copy(account, with_password=with_password)
        return None

    def update_account(
        self, account: Account, *, password_hash: Optional[str] = None
    ) -> Account:
        """Write identity, profile and flag fields.

        Lockout counters and pending secrets are left untouched; they only
        change through their own atomic operations.
        """
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise KeyError(account.id)
            self._check_unique(account)
            updated = copy.deepcopy(account)
            updated.lockout = current.lockout
            updated.pending_secrets = current.pending_secrets
            updated.password_hash = password_hash or current.password_hash
            self.accounts[account.id] = updated
            self._persist_state()
            return self._copy(updated, with_password=False)

    # ---- lockout -----------------------------------------------------

    def record_login_failure(
        self, account_id: str, policy: LockoutPolicy, now: datetime
    ) -> LockoutState:
        with self._data_lock:
            account = self.accounts[account_id]
            account.lockout = policy.register_failure(account.lockout, now)
            self._persist_state()
            return copy.deepcopy(account.lockout)

    def reset_lockout(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return
            account.lockout = LockoutState()
            self._persist_state()

    # ---- pending secrets ---------------------------------------------

    def set_secret(
        self, account_id: str, kind: SecretKind, secret: PendingSecret
    ) -> None:
        with self._data_lock:
            self.accounts[account_id].pending_secrets[kind] = copy.deepcopy(secret)
            self._persist_state()

    def get_secret(self, account_id: str, kind: SecretKind) -> Optional[PendingSecret]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            secret = account.pending_secrets.get(kind)
            return copy.deepcopy(secret) if secret else None

    def clear_secret(
        self,
        account_id: str,
        kind: SecretKind,
        *,
        expected_digest: Optional[str] = None,
    ) -> bool:
        """Remove the pending secret; with ``expected_digest`` only if it still matches."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return False
            secret = account.pending_secrets.get(kind)
            if secret is None:
                return False
            if expected_digest is not None and secret.digest != expected_digest:
                return False
            del account.pending_secrets[kind]
            self._persist_state()
            return True

    def consume_secret(
        self, kind: SecretKind, digest: str, now: datetime
    ) -> Optional[Account]:
        """Find the active account holding an unexpired secret with ``digest``
        and clear it in the same step."""
        with self._data_lock:
            for account in self.accounts.values():
                if not account.is_active:
                    continue
                secret = account.pending_secrets.get(kind)
                if secret is None or secret.digest != digest:
                    continue
                if secret.expires_at < now:
                    return None
                del account.pending_secrets[kind]
                self._persist_state()
                return self._copy(account, with_password=False)
        return None
