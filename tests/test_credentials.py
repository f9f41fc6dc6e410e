"""Unit tests for credential verification, legacy migration and rotation."""

import bcrypt
import pytest
from argon2 import PasswordHasher, Type

from agriqual.config import Settings
from agriqual.service.credentials import CredentialStore, hash_secret, matches
from agriqual.service.errors import NoCredentialError
from agriqual.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(jwt_secret="credential-test-secret", test_mode=True)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def credentials(store, settings):
    return CredentialStore(store, settings)


@pytest.fixture
def account(store):
    return store.create_account(
        "farmer@example.com",
        "Amina",
        credential_hash=hash_secret("Abcd1234!"),
        email_verified=True,
    )


class TestVerify:
    def test_current_scheme_match(self, credentials, account):
        assert credentials.verify(account, "Abcd1234!") is True

    def test_mismatch(self, credentials, account):
        assert credentials.verify(account, "Wrong1234!") is False

    def test_hash_is_argon2id(self, account):
        assert account.credential_hash.startswith("$argon2id$")

    def test_no_credential_is_distinct(self, credentials, store):
        bare = store.create_account("bare@example.com", "Bare")
        with pytest.raises(NoCredentialError):
            credentials.verify(bare, "Anything1!")

    def test_empty_plaintext_field_counts_as_no_credential(self, credentials, store):
        blank = store.create_account("blank@example.com", "Blank", legacy_password="")
        assert blank.has_credential is False
        with pytest.raises(NoCredentialError):
            credentials.verify(blank, "")


class TestLegacyMigration:
    """Legacy matches are re-hashed with argon2id before verify returns."""

    def test_bcrypt_hash_upgraded(self, credentials, store):
        legacy = bcrypt.hashpw(b"Abcd1234!", bcrypt.gensalt(rounds=4)).decode()
        account = store.create_account(
            "old@example.com", "Old", credential_hash=legacy, email_verified=True
        )

        assert credentials.verify(account, "Abcd1234!") is True

        stored = store.get_account(account.id)
        assert stored.credential_hash.startswith("$argon2id$")
        assert matches(stored.credential_hash, "Abcd1234!")
        # the in-memory view is refreshed too
        assert account.credential_hash == stored.credential_hash

    def test_bcrypt_mismatch_leaves_hash(self, credentials, store):
        legacy = bcrypt.hashpw(b"Abcd1234!", bcrypt.gensalt(rounds=4)).decode()
        account = store.create_account("old@example.com", "Old", credential_hash=legacy)

        assert credentials.verify(account, "Nope1234!") is False
        assert store.get_account(account.id).credential_hash == legacy

    def test_plaintext_field_upgraded_and_cleared(self, credentials, store):
        account = store.create_account(
            "plain@example.com", "Plain", legacy_password="Abcd1234!"
        )

        assert credentials.verify(account, "Abcd1234!") is True

        stored = store.get_account(account.id)
        assert stored.legacy_password is None
        assert stored.credential_hash.startswith("$argon2id$")

    def test_outdated_argon2_parameters_upgraded(self, credentials, store):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        weak_hash = weak.hash("Abcd1234!")
        account = store.create_account("weak@example.com", "Weak", credential_hash=weak_hash)

        assert credentials.verify(account, "Abcd1234!") is True
        upgraded = store.get_account(account.id).credential_hash
        assert upgraded != weak_hash
        assert matches(upgraded, "Abcd1234!")


class TestRotation:
    def test_rotate_then_verify(self, credentials, store, account):
        updated = credentials.rotate(account, "Fresh5678#")

        assert credentials.verify(updated, "Fresh5678#") is True
        assert credentials.verify(updated, "Abcd1234!") is False

    def test_rotate_appends_previous_hash(self, credentials, store, account):
        original_hash = account.credential_hash
        credentials.rotate(account, "Fresh5678#")

        history = store.list_credential_history(account.id)
        assert [entry.credential_hash for entry in history] == [original_hash]

    def test_rotate_bumps_token_version(self, credentials, account):
        updated = credentials.rotate(account, "Fresh5678#")
        assert updated.token_version == account.token_version + 1

    def test_history_retention_is_bounded(self, credentials, store, account, settings):
        current = account
        for i in range(settings.password_history_retention + 3):
            current = credentials.rotate(current, f"Rotate{i:02d}#x")

        history = store.list_credential_history(account.id, limit=100)
        assert len(history) == settings.password_history_retention


class TestRecentlyUsed:
    def test_current_secret_counts_as_used(self, credentials, account):
        assert credentials.was_recently_used(account, "Abcd1234!") is True

    def test_just_rotated_secret_is_current_not_history(self, credentials, store, account):
        updated = credentials.rotate(account, "Fresh5678#")

        assert credentials.was_recently_used(updated, "Fresh5678#") is True
        history = store.list_credential_history(account.id)
        assert not any(matches(entry.credential_hash, "Fresh5678#") for entry in history)

    def test_retired_secret_found_within_depth(self, credentials, account):
        updated = credentials.rotate(account, "Fresh5678#")
        assert credentials.was_recently_used(updated, "Abcd1234!") is True

    def test_secret_older_than_depth_is_allowed(self, credentials, account):
        current = account
        for i in range(5):
            current = credentials.rotate(current, f"Rotate{i:02d}#x")

        # Abcd1234! is now the 5th newest entry; depth 4 excludes it
        assert credentials.was_recently_used(current, "Abcd1234!", depth=5) is True
        assert credentials.was_recently_used(current, "Abcd1234!", depth=4) is False

    def test_unused_secret(self, credentials, account):
        assert credentials.was_recently_used(account, "Brand9new!") is False
