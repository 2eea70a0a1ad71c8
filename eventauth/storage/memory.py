from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from eventauth.logging import email_hash, get_logger
from eventauth.storage.errors import ConstraintViolation
from eventauth.storage.models import AccountRecord, normalize_account_key


class MemoryAccountStore:
    """In-memory account lookup used for development and tests.

    Stands in for the document database that owns user records. Ids are
    sequential integers starting at 1, matching the surrogate keys the
    event backend hands out.
    """

    def __init__(self, accounts: Optional[Iterable[AccountRecord]] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, AccountRecord] = {}
        self._by_email: Dict[str, int] = {}
        self._next_id = 1
        self._data_lock = threading.RLock()
        for account in accounts or []:
            self._insert(account)

    def _insert(self, account: AccountRecord) -> AccountRecord:
        key = normalize_account_key(account.email)
        with self._data_lock:
            if key in self._by_email:
                raise ConstraintViolation(
                    "email already registered", {"email_hash": email_hash(key)}
                )
            account.email = key
            self.accounts[account.id] = account
            self._by_email[key] = account.id
            self._next_id = max(self._next_id, account.id + 1)
        return account

    def create_account(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> AccountRecord:
        with self._data_lock:
            account = AccountRecord(
                id=self._next_id,
                email=email,
                name=name,
                password_hash=password_hash,
            )
            self._insert(account)
        self.logger.info("account_created", account_id=account.id)
        return account

    def get_account(self, account_id: int) -> Optional[AccountRecord]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[AccountRecord]:
        key = normalize_account_key(email)
        with self._data_lock:
            account_id = self._by_email.get(key)
            return self.accounts.get(account_id) if account_id is not None else None

    def save_password(self, account_id: int, password_hash: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise KeyError(account_id)
            account.password_hash = password_hash

    def list_accounts(self) -> List[AccountRecord]:
        with self._data_lock:
            return list(self.accounts.values())
