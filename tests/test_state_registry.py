"""State registry helpers tests."""
from __future__ import annotations

import fcntl
import os
from pathlib import Path

import pytest

from vhostctl.models import MigrationStatus, Node, OsInfo, Tenant
from vhostctl.state import StateRegistry, StateRegistryError
from vhostctl.state.registry import LOCK_FILE


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("tenants.yml", default={"tenants": []})

    assert result == {"tenants": []}
    assert registry.read_nodes() == []
    assert registry.read_tenants() == []


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path)
    payload = {"nodes": [{"name": "node-a"}]}

    registry.write("nodes.yml", payload)

    path = tmp_path / "nodes.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("nodes.yml") == payload


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "tenants.yml").write_text("tenants: [unterminated\n")

    with pytest.raises(StateRegistryError):
        registry.read("tenants.yml")


def test_upsert_node_replaces_by_name(tmp_path: Path) -> None:
    """Nodes are keyed by name and keep their OS fingerprint."""
    registry = StateRegistry(tmp_path)
    registry.upsert_node(Node(name="node-b", site="syd"))
    registry.upsert_node(Node(name="node-a", site="syd", ssh_port=2222))
    registry.upsert_node(
        Node(name="node-a", site="syd", os=OsInfo("debian", "trixie", "deb.debian.org"))
    )

    nodes = registry.read_nodes()
    assert [node.name for node in nodes] == ["node-a", "node-b"]
    node = registry.get_node("node-a")
    assert node is not None
    assert node.ssh_port is None
    assert node.os == OsInfo("debian", "trixie", "deb.debian.org")
    assert registry.get_node("node-z") is None


def test_tenants_unique_per_node_and_domain(tmp_path: Path) -> None:
    """The same domain may exist on two nodes but once per node."""
    registry = StateRegistry(tmp_path)
    registry.upsert_node(Node(name="node-a", site="syd"))
    registry.upsert_node(Node(name="node-b", site="mel"))
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-a"))
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-b"))
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-a", rollback_available=True))

    assert len(registry.read_tenants()) == 2
    assert len(registry.find_tenants("example.com")) == 2
    [(tenant, node)] = registry.find_tenants("example.com", vsite="mel")
    assert tenant.vnode == "node-b"
    assert node is not None and node.site == "mel"
    stored = registry.get_tenant("node-a", "example.com")
    assert stored is not None and stored.rollback_available is True


def test_update_tenant_and_migration_log(tmp_path: Path) -> None:
    """Updates merge into the record and the log only ever grows."""
    registry = StateRegistry(tmp_path)
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-a"))

    updated = registry.update_tenant(
        "node-a", "example.com", {"migration_status": MigrationStatus.IN_PROGRESS}
    )
    registry.append_migration_log("node-a", "example.com", {"kind": "migration", "status": "failed"})
    registry.append_migration_log("node-a", "example.com", {"kind": "rollback", "status": "success"})

    assert updated.migration_status is MigrationStatus.IN_PROGRESS
    tenant = registry.get_tenant("node-a", "example.com")
    assert tenant is not None
    assert [entry["kind"] for entry in tenant.migration_log] == ["migration", "rollback"]

    with pytest.raises(StateRegistryError):
        registry.update_tenant("node-a", "missing.example", {"rollback_available": True})


def test_vconf_roundtrip_and_change_detection(tmp_path: Path) -> None:
    """Saving identical variables reports no change."""
    registry = StateRegistry(tmp_path)
    variables = {"VHOST": "example.com", "U_UID": "1001"}

    assert registry.load_vconf("node-a/example.com") == {}
    assert registry.save_vconf("node-a/example.com", variables) is True
    assert registry.save_vconf("node-a/example.com", variables) is False
    assert registry.load_vconf("node-a/example.com") == variables
    assert (tmp_path / "vconfs" / "node-a" / "example.com.yml").is_file()


def test_remove_tenant_deletes_vconf(tmp_path: Path) -> None:
    """Removing a tenant deletes its stored configuration too."""
    registry = StateRegistry(tmp_path)
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-a"))
    registry.save_vconf("node-a/example.com", {"VHOST": "example.com"})

    registry.remove_tenant("node-a", "example.com")

    assert registry.get_tenant("node-a", "example.com") is None
    assert registry.load_vconf("node-a/example.com") == {}
    with pytest.raises(StateRegistryError):
        registry.remove_tenant("node-a", "example.com")


@pytest.mark.parametrize("key", ["example.com", "node-a/", "node-a/../etc", "node-a/.hidden"])
def test_invalid_vconf_keys_raise(tmp_path: Path, key: str) -> None:
    """Keys that could escape the registry are rejected."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError):
        registry.vconf_name(key)


def _flock_is_free(path: Path) -> bool:
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return True
    finally:
        os.close(fd)


def test_transaction_excludes_other_processes(tmp_path: Path) -> None:
    """Read-modify-write cycles hold the registry file lock until they finish."""
    registry = StateRegistry(tmp_path)
    registry.save_tenant(Tenant(vhost="example.com", vnode="node-a"))

    with registry.transaction():
        assert not _flock_is_free(tmp_path / LOCK_FILE)
        with registry.transaction():
            registry.update_tenant("node-a", "example.com", {"rollback_available": True})
        assert not _flock_is_free(tmp_path / LOCK_FILE)

    assert _flock_is_free(tmp_path / LOCK_FILE)
    stored = registry.get_tenant("node-a", "example.com")
    assert stored is not None and stored.rollback_available
