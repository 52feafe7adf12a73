"""Tests for the JSON-persisted principal store."""

import pytest

from chatguard.storage.errors import ConstraintViolation
from chatguard.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_principals_survive_reload(tmp_path, memory_store):
    user = memory_store.create_user("13800000010", "Ana", meta={"city": "Hangzhou"})
    agent = memory_store.create_customer_service(
        "13900000010", "Li", service_stats={"served": 2}
    )
    admin = memory_store.create_admin("root", "Root", level="super")
    memory_store.save_password(admin.id, "hash", "argon2id")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.load_user_by_id(user.id).meta == {"city": "Hangzhou"}
    assert reloaded.load_customer_service_by_id(agent.id).service_stats == {"served": 2}
    assert reloaded.load_admin_by_id(admin.id).level == "super"
    assert reloaded.get_password_record(admin.id) == ("hash", "argon2id")
    assert reloaded.load_user_by_id(user.id).created_at == user.created_at


def test_duplicate_logins_rejected(memory_store):
    memory_store.create_user("13800000011")
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("13800000011")

    memory_store.create_admin("root")
    with pytest.raises(ConstraintViolation):
        memory_store.create_admin("root")


def test_same_phone_allowed_across_kinds(memory_store):
    memory_store.create_user("13800000012")
    agent = memory_store.create_customer_service("13800000012")
    assert memory_store.find_by_login("customer_service", "13800000012") is agent


def test_find_by_login_routes_by_role(memory_store):
    user = memory_store.create_user("13800000013")
    admin = memory_store.create_admin("ops")

    assert memory_store.find_by_login("user", "13800000013") is user
    assert memory_store.find_by_login("admin", "ops") is admin
    assert memory_store.find_by_login("admin", "13800000013") is None
    assert memory_store.find_by_login("superuser", "ops") is None


def test_password_requires_existing_principal(memory_store):
    with pytest.raises(ConstraintViolation):
        memory_store.save_password("missing", "hash", "argon2id")


def test_set_active_toggles_flag(memory_store):
    agent = memory_store.create_customer_service("13900000014")

    memory_store.set_active(agent.id, False)

    assert memory_store.load_customer_service_by_id(agent.id).is_active is False
    assert memory_store.set_active("missing", False) is None


def test_corrupt_state_file_starts_empty(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "principals.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.users == {}
