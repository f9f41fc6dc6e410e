from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional, TypeVar

from agriqual.logging import get_logger
from agriqual.storage.errors import ConstraintViolation
from agriqual.storage.models import (
    Account,
    CredentialHistoryEntry,
    LockoutState,
    LoginAttempt,
    PendingRegistration,
    utcnow,
)

T = TypeVar("T")

LOGIN_PURPOSE = "login"


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every public method copies records in and out so callers never hold a
    reference to live state; all mutation happens under ``_data_lock``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self.credential_history: Dict[str, List[CredentialHistoryEntry]] = {}
        self.lockouts: Dict[tuple[str, str], LockoutState] = {}
        self.pending: Dict[str, PendingRegistration] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so update callbacks may call back into the store
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self,
        email: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "farmer",
        credential_hash: Optional[str] = None,
        legacy_password: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account:
        email = email.strip().lower()
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone=phone,
                role=role,
                credential_hash=credential_hash,
                legacy_password=legacy_password,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._email_index[email] = account.id
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email.strip().lower())
            return self.get_account(account_id) if account_id else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            account.updated_at = utcnow()
            return replace(account)

    # credentials
    def set_credential(
        self,
        account_id: str,
        credential_hash: str,
        *,
        retire_current: bool = False,
        retention: int = 10,
    ) -> Account:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            now = utcnow()
            if retire_current:
                if account.credential_hash:
                    history = self.credential_history.setdefault(account_id, [])
                    history.append(
                        CredentialHistoryEntry(
                            account_id=account_id,
                            credential_hash=account.credential_hash,
                            created_at=now,
                        )
                    )
                    # oldest first; prune from the front
                    del history[: max(0, len(history) - retention)]
                account.token_version += 1
            account.credential_hash = credential_hash
            account.legacy_password = None
            account.updated_at = now
            return replace(account)

    def list_credential_history(
        self, account_id: str, limit: int = 5
    ) -> List[CredentialHistoryEntry]:
        with self._data_lock:
            history = self.credential_history.get(account_id, [])
            return [replace(entry) for entry in reversed(history[-limit:])] if limit > 0 else []

    # lockout
    def get_lockout(self, account_id: str, purpose: str) -> Optional[LockoutState]:
        with self._data_lock:
            state = self.lockouts.get((account_id, purpose))
            return replace(state) if state else None

    def update_lockout(
        self, account_id: str, purpose: str, mutate: Callable[[LockoutState], T]
    ) -> T:
        """Apply ``mutate`` to the (lazily created) state under the store lock."""

        with self._data_lock:
            key = (account_id, purpose)
            state = self.lockouts.get(key) or LockoutState(
                account_id=account_id, purpose=purpose
            )
            working = replace(state)
            result = mutate(working)
            self.lockouts[key] = working
            if purpose == LOGIN_PURPOSE:
                account = self.accounts.get(account_id)
                if account:
                    account.failed_login_count = working.failed_attempts
                    account.lock_until = working.lock_until
            return result

    # pending registrations
    def upsert_pending_registration(self, pending: PendingRegistration) -> None:
        with self._data_lock:
            pending = replace(pending, email=pending.email.strip().lower())
            self.pending[pending.email] = pending

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            pending = self.pending.get(email.strip().lower())
            return replace(pending) if pending else None

    def delete_pending_registration(
        self, email: str, otp_hash: Optional[str] = None
    ) -> bool:
        """Delete the pending record; with ``otp_hash``, only if it still carries that code."""

        with self._data_lock:
            email = email.strip().lower()
            pending = self.pending.get(email)
            if not pending or (otp_hash is not None and pending.otp_hash != otp_hash):
                return False
            del self.pending[email]
            return True

    def record_pending_failure(self, email: str, max_attempts: int) -> int:
        """Count a wrong code; drop the record once ``max_attempts`` is reached."""

        with self._data_lock:
            email = email.strip().lower()
            pending = self.pending.get(email)
            if not pending:
                return 0
            pending.failed_attempts += 1
            if pending.failed_attempts >= max_attempts:
                self.pending.pop(email, None)
            return pending.failed_attempts

    def complete_registration(self, email: str, otp_hash: str) -> Optional[Account]:
        """Consume the pending record and promote it to a verified account.

        Returns None when the record is gone or was re-issued with another code.
        """

        with self._data_lock:
            email = email.strip().lower()
            pending = self.pending.get(email)
            if not pending or pending.otp_hash != otp_hash:
                return None
            existing_id = self._email_index.get(email)
            existing = self.accounts.get(existing_id) if existing_id else None
            if existing and existing.email_verified:
                self.pending.pop(email, None)
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing:
                existing.name = pending.name
                existing.phone = pending.phone or existing.phone
                existing.role = pending.role or existing.role
                existing.credential_hash = pending.credential_hash
                existing.legacy_password = None
                existing.email_verified = True
                existing.failed_login_count = 0
                existing.lock_until = None
                existing.updated_at = utcnow()
                self.lockouts.pop((existing.id, LOGIN_PURPOSE), None)
                account = existing
            else:
                account = Account(
                    id=str(uuid.uuid4()),
                    email=email,
                    name=pending.name,
                    phone=pending.phone,
                    role=pending.role,
                    credential_hash=pending.credential_hash,
                    email_verified=True,
                )
                self.accounts[account.id] = account
                self._email_index[email] = account.id
            self.pending.pop(email, None)
            return replace(account)

    # audit
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(replace(attempt))

    def list_login_attempts(self, email: str, limit: int = 20) -> List[LoginAttempt]:
        with self._data_lock:
            email = email.strip().lower()
            matches = [a for a in self.login_attempts if a.email == email]
            return [replace(a) for a in reversed(matches[-limit:])]
