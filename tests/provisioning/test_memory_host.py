"""Unit tests for the in-memory host and host detection."""

import pytest

from user_cas.provisioning.host import HostInfo, HostVariant, detect_host_variant
from user_cas.provisioning.memory import LEGACY_DATABASE_BACKEND, InMemoryHost


@pytest.mark.parametrize(
    "name,version,expected",
    [
        ("Nextcloud", (14, 0, 0), HostVariant.CURRENT),
        ("Nextcloud", (28, 0, 4), HostVariant.CURRENT),
        ("nextcloud", (14,), HostVariant.CURRENT),
        ("Nextcloud", (13, 0, 12), HostVariant.LEGACY),
        ("ownCloud", (10, 13, 0), HostVariant.LEGACY),
        ("ownCloud", (28, 0, 0), HostVariant.LEGACY),
        ("Nextcloud", (), HostVariant.LEGACY),
    ],
)
def test_detect_host_variant(
    name: str, version: tuple[int, ...], expected: HostVariant
) -> None:
    assert detect_host_variant(HostInfo(name, version)) is expected


class TestInMemoryHost:
    """Test the in-memory host services."""

    def test_current_host_records_requested_backend(self) -> None:
        host = InMemoryHost(name="Nextcloud", version=(28, 0, 0))

        user = host.users.create_user("alice", "user_cas.CurrentBackend")

        assert user is not None
        assert user.backend_class_name == "user_cas.CurrentBackend"

    def test_legacy_host_stamps_database_backend(self) -> None:
        host = InMemoryHost(name="ownCloud", version=(10, 0, 0))

        user = host.users.create_user("alice", "user_cas.LegacyBackend")

        assert user.backend_class_name == LEGACY_DATABASE_BACKEND
        assert host.accounts.set_backend("ALICE", "user_cas.LegacyBackend") is True
        assert user.backend_class_name == "user_cas.LegacyBackend"

    def test_set_backend_of_unknown_user(self) -> None:
        host = InMemoryHost(name="ownCloud", version=(10, 0, 0))
        assert host.accounts.set_backend("ghost", "x") is False

    def test_create_is_create_if_absent(self) -> None:
        host = InMemoryHost()
        first = host.users.create_user("alice", "b")

        assert host.users.create_user("alice", "b") is None
        assert host.users.get("alice") is first

    def test_delete_user_removes_everything(self) -> None:
        host = InMemoryHost()
        user = host.users.create_user("alice", "b")
        user.set_email("alice@example.com")
        host.groups.create_group("staff").add_user(user)

        assert host.users.delete_user("alice") is True

        assert host.users.user_exists("alice") is False
        assert host.groups.get("staff").members == frozenset()
        assert host.accounts.get_backend("alice") is None
        assert host.config.get_user_value("alice", "settings", "email") is None
        assert host.users.delete_user("alice") is False

    def test_group_lookup(self) -> None:
        host = InMemoryHost()
        user = host.users.create_user("alice", "b")
        host.groups.create_group("ops").add_user(user)
        host.groups.create_group("staff").add_user(user)
        host.groups.create_group("empty")

        assert host.groups.get_user_group_ids(user) == ["ops", "staff"]
        assert host.groups.create_group("ops").members == frozenset({"alice"})
