"""Helpers for interacting with the vhostctl state registry.

The registry directory (``/var/lib/vhostctl/registry`` by default) stores YAML
artifacts: ``nodes.yml``, ``tenants.yml`` and one desired-configuration file
per tenant under ``vconfs/<vnode>/<vhost>.yml``. Every write is atomic
(temporary file + ``os.replace``) so a failed operation never leaves a
half-written record behind. Read-modify-write cycles run inside
:meth:`StateRegistry.transaction`, which also holds an exclusive ``flock`` on
``.registry.lock`` so concurrent vhostctl processes never lose an update.
"""
from __future__ import annotations

import fcntl
import os
import tempfile
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage vhostctl state. Install with `pip install vhostctl`."
    ) from exc

from ..models import MigrationStatus, Node, Tenant, tenant_key

LOCK_FILE = ".registry.lock"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    _lock: threading.RLock = field(
        default_factory=threading.RLock,
        compare=False,
        repr=False,
    )
    _depth: list[int] = field(default_factory=lambda: [0], compare=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the registry exclusively for this thread and process.

        Nested transactions in the same thread reuse the outer lock.
        """
        with self._lock:
            if self._depth[0]:
                self._depth[0] += 1
                try:
                    yield
                finally:
                    self._depth[0] -= 1
                return
            self.ensure_root()
            fd = os.open(self.path_for(LOCK_FILE), os.O_RDWR | os.O_CREAT, 0o640)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                self._depth[0] = 1
                try:
                    yield
                finally:
                    self._depth[0] = 0
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Node helpers -------------------------------------------------------
    def read_nodes(self) -> list[Node]:
        """Return every registered node."""
        value = self.read("nodes.yml", default={"nodes": []})
        raw = value.get("nodes", []) if isinstance(value, Mapping) else []
        nodes: list[Node] = []
        if isinstance(raw, list):
            for entry in raw:
                if isinstance(entry, Mapping) and entry.get("name"):
                    nodes.append(Node.from_mapping(entry))
        return nodes

    def get_node(self, name: str) -> Node | None:
        """Return the node called *name* if registered."""
        for node in self.read_nodes():
            if node.name == name:
                return node
        return None

    def upsert_node(self, node: Node) -> None:
        """Add *node* or replace the entry with the same name."""
        with self.transaction():
            nodes = [existing for existing in self.read_nodes() if existing.name != node.name]
            nodes.append(node)
            nodes.sort(key=lambda item: item.name)
            self.write("nodes.yml", {"nodes": [item.to_dict() for item in nodes]})

    # Tenant helpers -----------------------------------------------------
    def read_tenants(self) -> list[Tenant]:
        """Return every registered tenant."""
        value = self.read("tenants.yml", default={"tenants": []})
        raw = value.get("tenants", []) if isinstance(value, Mapping) else []
        tenants: list[Tenant] = []
        if isinstance(raw, list):
            for entry in raw:
                if isinstance(entry, Mapping) and entry.get("vhost") and entry.get("vnode"):
                    tenants.append(Tenant.from_mapping(entry))
        return tenants

    def find_tenants(
        self,
        vhost: str,
        *,
        vnode: str | None = None,
        vsite: str | None = None,
    ) -> list[tuple[Tenant, Node | None]]:
        """Return tenants named *vhost*, filtered by the optional hints."""
        nodes = {node.name: node for node in self.read_nodes()}
        matches: list[tuple[Tenant, Node | None]] = []
        for tenant in self.read_tenants():
            if tenant.vhost != vhost:
                continue
            if vnode and tenant.vnode != vnode:
                continue
            node = nodes.get(tenant.vnode)
            if vsite and (node is None or node.site != vsite):
                continue
            matches.append((tenant, node))
        return matches

    def get_tenant(self, vnode: str, vhost: str) -> Tenant | None:
        """Return the tenant *vhost* on *vnode* if registered."""
        for tenant in self.read_tenants():
            if tenant.vnode == vnode and tenant.vhost == vhost:
                return tenant
        return None

    def save_tenant(self, tenant: Tenant) -> None:
        """Add *tenant* or replace its existing entry."""
        with self.transaction():
            entries = [
                item.to_dict()
                for item in self.read_tenants()
                if item.key != tenant.key
            ]
            entries.append(tenant.to_dict())
            entries.sort(key=lambda item: (str(item["vnode"]), str(item["vhost"])))
            self.write("tenants.yml", {"tenants": entries})

    def update_tenant(self, vnode: str, vhost: str, updates: Mapping[str, object]) -> Tenant:
        """Apply *updates* to a registered tenant and return the new record."""
        with self.transaction():
            tenant = self.get_tenant(vnode, vhost)
            if tenant is None:
                raise StateRegistryError(f"Tenant '{tenant_key(vnode, vhost)}' not found in registry")
            merged = tenant.to_dict()
            for key, value in updates.items():
                merged[key] = value.value if isinstance(value, MigrationStatus) else value
            updated = Tenant.from_mapping(merged)
            self.save_tenant(updated)
            return updated

    def append_migration_log(self, vnode: str, vhost: str, entry: Mapping[str, object]) -> None:
        """Append *entry* to the tenant's migration log."""
        with self.transaction():
            tenant = self.get_tenant(vnode, vhost)
            if tenant is None:
                raise StateRegistryError(f"Tenant '{tenant_key(vnode, vhost)}' not found in registry")
            tenant.migration_log.append(dict(entry))
            self.save_tenant(tenant)

    def remove_tenant(self, vnode: str, vhost: str) -> None:
        """Remove a tenant and its desired configuration."""
        with self.transaction():
            tenants = self.read_tenants()
            remaining = [item for item in tenants if item.key != tenant_key(vnode, vhost)]
            if len(remaining) == len(tenants):
                raise StateRegistryError(f"Tenant '{tenant_key(vnode, vhost)}' not found in registry")
            self.write("tenants.yml", {"tenants": [item.to_dict() for item in remaining]})
            self.delete_vconf(tenant_key(vnode, vhost))

    # Desired configuration helpers --------------------------------------
    def vconf_name(self, key: str) -> str:
        """Return the registry file name holding the configuration for *key*."""
        vnode, _, vhost = key.partition("/")
        if not vnode or not vhost or "/" in vhost or vhost.startswith("."):
            raise StateRegistryError(f"Invalid tenant key '{key}'.")
        return f"vconfs/{vnode}/{vhost}.yml"

    def load_vconf(self, key: str) -> dict[str, str]:
        """Return the desired configuration for *key* (empty when missing)."""
        value = self.read(self.vconf_name(key), default={})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Configuration for '{key}' must be a mapping.")
        raw = value.get("vars", {})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"Configuration for '{key}' must contain a 'vars' mapping.")
        return {str(name): str(item) for name, item in raw.items()}

    def save_vconf(self, key: str, variables: Mapping[str, str]) -> bool:
        """Persist *variables* for *key*; return ``True`` when content changed."""
        payload = {str(name): str(value) for name, value in variables.items()}
        with self.transaction():
            if self.path_for(self.vconf_name(key)).exists() and self.load_vconf(key) == payload:
                return False
            self.write(self.vconf_name(key), {"vars": payload})
        return True

    def delete_vconf(self, key: str) -> None:
        """Remove the configuration file for *key* if present."""
        self.path_for(self.vconf_name(key)).unlink(missing_ok=True)


__all__ = ["StateRegistry", "StateRegistryError"]
