"""Tests for the admin bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from agriqual.service.credentials import matches
from agriqual.service.errors import ValidationError
from agriqual.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_verified_admin(bootstrap):
    result = bootstrap("ops@example.com", "Ops", "Harvest#2024")

    assert result["status"] == "created"
    account = get_runtime().store.get_account_by_email("ops@example.com")
    assert account.role == "admin"
    assert account.email_verified is True
    assert matches(account.credential_hash, "Harvest#2024")


def test_promotes_existing_account(bootstrap):
    store = get_runtime().store
    existing = store.create_account("farmer@example.com", "Amina", email_verified=True)

    result = bootstrap("farmer@example.com", "ignored", "ignored")

    assert result == {
        "account_id": existing.id,
        "email": "farmer@example.com",
        "status": "promoted",
    }
    assert store.get_account(existing.id).role == "admin"
    assert bootstrap("farmer@example.com", "", "")["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap("ops@example.com", "Ops", "Harvest#2024", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_email("ops@example.com") is None


def test_new_admin_must_satisfy_policy(bootstrap):
    with pytest.raises(ValidationError):
        bootstrap("ops@example.com", "Ops", "weak")
