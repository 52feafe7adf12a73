"""Tests for the principal provisioning script."""

import pytest

from chatguard.service.runtime import get_runtime
from scripts.bootstrap_admin import bootstrap_principal, validate_password

PASSWORD = "Bootstrap-Passw0rd"


@pytest.mark.parametrize(
    "password, ok",
    [
        (PASSWORD, True),
        ("short1!A", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


def test_creates_admin_that_can_sign_in():
    result = bootstrap_principal("admin", "ops", PASSWORD, name="Operator")

    runtime = get_runtime()
    admin = runtime.store.find_by_login("admin", "ops")
    assert result["status"] == "created"
    assert result["principal_id"] == admin.id
    assert result["token"].startswith("A_")
    assert runtime.login.verify_password(admin.id, PASSWORD)


def test_existing_principal_gets_password_reset():
    first = bootstrap_principal("customer_service", "13900000042", PASSWORD)
    second = bootstrap_principal("customer_service", "13900000042", "Another-Passw0rd")

    runtime = get_runtime()
    assert second["status"] == "password_reset"
    assert second["principal_id"] == first["principal_id"]
    assert runtime.login.verify_password(first["principal_id"], "Another-Passw0rd")
    assert not runtime.login.verify_password(first["principal_id"], PASSWORD)


def test_dry_run_changes_nothing():
    result = bootstrap_principal("user", "13800000042", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.find_by_login("user", "13800000042") is None
