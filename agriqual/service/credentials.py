from __future__ import annotations

import hmac
from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from agriqual.config import Settings
from agriqual.logging import get_logger
from agriqual.service.errors import NoCredentialError
from agriqual.storage.models import Account

logger = get_logger(__name__)

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

_hasher = PasswordHasher(type=Type.ID)


def hash_secret(secret: str) -> str:
    """Hash ``secret`` with the current scheme (argon2id)."""

    return _hasher.hash(secret)


def is_legacy_hash(stored_hash: str) -> bool:
    return stored_hash.startswith(BCRYPT_PREFIXES)


def matches(stored_hash: Optional[str], candidate: str) -> bool:
    """Constant-time check of ``candidate`` against an argon2id or bcrypt hash."""

    if not stored_hash:
        return False
    if is_legacy_hash(stored_hash):
        try:
            return bcrypt.checkpw(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            logger.warning("credential_hash_invalid", scheme="bcrypt")
            return False
    try:
        return _hasher.verify(stored_hash, candidate)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("credential_hash_invalid", scheme="argon2id")
        return False


class CredentialStore:
    """Verify, rotate and upgrade account credentials."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def hash_secret(self, secret: str) -> str:
        return hash_secret(secret)

    def verify(self, account: Account, candidate: str) -> bool:
        """Check ``candidate`` against the account's credential.

        Legacy matches (bcrypt or the carried-over plaintext field) and argon2
        hashes with outdated parameters are re-hashed before returning True.
        Raises ``NoCredentialError`` when the account has no credential at all.
        """

        if not account.has_credential:
            self.logger.warning("credential_missing", account_id=account.id)
            raise NoCredentialError("No password is set for this account")

        stored = account.credential_hash
        if stored:
            if not matches(stored, candidate):
                return False
            if is_legacy_hash(stored):
                self._upgrade(account, candidate, scheme="bcrypt")
            elif _hasher.check_needs_rehash(stored):
                self._upgrade(account, candidate, scheme="argon2id_params")
            return True
        # only the carried-over plaintext field is left
        if not hmac.compare_digest(
            account.legacy_password.encode("utf-8"), candidate.encode("utf-8")
        ):
            return False
        self._upgrade(account, candidate, scheme="plaintext")
        return True

    def _upgrade(self, account: Account, candidate: str, *, scheme: str) -> None:
        updated = self.store.set_credential(account.id, hash_secret(candidate))
        account.credential_hash = updated.credential_hash
        account.legacy_password = None
        self.logger.info("credential_rehashed", account_id=account.id, from_scheme=scheme)

    def rotate(self, account: Account, new_secret: str) -> Account:
        """Retire the current hash into history and store ``new_secret``."""

        updated = self.store.set_credential(
            account.id,
            hash_secret(new_secret),
            retire_current=True,
            retention=self.settings.password_history_retention,
        )
        self.logger.info(
            "credential_rotated", account_id=account.id, token_version=updated.token_version
        )
        return updated

    def was_recently_used(
        self, account: Account, candidate: str, depth: Optional[int] = None
    ) -> bool:
        """True if ``candidate`` is the current credential or among the last ``depth`` retired ones."""

        depth = self.settings.password_history_depth if depth is None else depth
        if matches(account.credential_hash, candidate):
            return True
        for entry in self.store.list_credential_history(account.id, limit=depth):
            if matches(entry.credential_hash, candidate):
                return True
        return False


__all__ = ["CredentialStore", "hash_secret", "matches", "is_legacy_hash"]
