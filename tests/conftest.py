"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import random
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest
from fakes import FakeHost

from vhostctl.generator import build_configuration
from vhostctl.models import MigrationStatus, Node, OsInfo, Tenant
from vhostctl.state import StateRegistry

DEBIAN = OsInfo("debian", "trixie", "deb.debian.org")

TenantFactory = Callable[..., tuple[Tenant, dict[str, str]]]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def host() -> FakeHost:
    """Return an empty Debian node."""
    return FakeHost()


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return an empty registry below ``tmp_path``."""
    registry = StateRegistry(tmp_path / "registry")
    registry.ensure_root()
    return registry


@pytest.fixture
def node(registry: StateRegistry) -> Node:
    """Return a registered Debian node."""
    node = Node(name="node-a", site="syd", fqdn="node-a.example.net", os=DEBIAN)
    registry.upsert_node(node)
    return node


@pytest.fixture
def make_tenant(registry: StateRegistry, node: Node) -> TenantFactory:
    """Return a factory registering a tenant and its configuration."""

    def factory(
        vhost: str = "example.com",
        *,
        status: MigrationStatus = MigrationStatus.DISCOVERED,
        existing_uids: Iterable[int] = (),
        overrides: dict[str, str] | None = None,
    ) -> tuple[Tenant, dict[str, str]]:
        vconf = build_configuration(
            node,
            vhost,
            overrides,
            node.os,
            existing_uids=existing_uids,
            rng=random.Random(7),
        )
        tenant = Tenant(vhost=vhost, vnode=node.name, migration_status=status)
        registry.save_vconf(tenant.key, vconf)
        registry.save_tenant(tenant)
        return tenant, vconf

    return factory
