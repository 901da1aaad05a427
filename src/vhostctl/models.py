"""Domain records persisted in the state registry."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> str:
    """Return the current time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


class MigrationStatus(str, Enum):
    """Lifecycle of a tenant with respect to the web-centric layout."""

    DISCOVERED = "discovered"
    VALIDATED = "validated"
    IN_PROGRESS = "in_progress"
    MIGRATED = "migrated"
    NATIVE = "native"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: object) -> MigrationStatus:
        """Return the status for *value*, defaulting unknown values to ``discovered``."""
        if isinstance(value, MigrationStatus):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return cls.DISCOVERED


MIGRATABLE_STATUSES = frozenset({MigrationStatus.DISCOVERED, MigrationStatus.VALIDATED})


@dataclass(slots=True, frozen=True)
class OsInfo:
    """Operating system fingerprint detected on a node."""

    ostyp: str
    osrel: str
    osmir: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"OSTYP": self.ostyp, "OSREL": self.osrel, "OSMIR": self.osmir}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> OsInfo | None:
        """Build an :class:`OsInfo` from a stored mapping, if complete."""
        if not isinstance(data, Mapping):
            return None
        values = [data.get(key) for key in ("OSTYP", "OSREL", "OSMIR")]
        if not all(isinstance(value, str) and value for value in values):
            return None
        return cls(ostyp=str(values[0]), osrel=str(values[1]), osmir=str(values[2]))


@dataclass(slots=True, frozen=True)
class Node:
    """A managed remote host."""

    name: str
    site: str = "local"
    hostname: str | None = None
    fqdn: str | None = None
    ssh_user: str | None = None
    ssh_port: int | None = None
    ip_address: str | None = None
    os: OsInfo | None = None

    @property
    def address(self) -> str:
        """Return the network address used to reach the node."""
        return self.hostname or self.name

    @property
    def admin_fqdn(self) -> str:
        """Return the node's administrative FQDN."""
        return self.fqdn or self.name

    def with_os(self, os_info: OsInfo) -> Node:
        """Return a copy of this node carrying *os_info*."""
        return replace(self, os=os_info)

    def with_fqdn(self, fqdn: str) -> Node:
        """Return a copy of this node carrying *fqdn*."""
        return replace(self, fqdn=fqdn)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "site": self.site,
            "hostname": self.hostname,
            "fqdn": self.fqdn,
            "ssh_user": self.ssh_user,
            "ssh_port": self.ssh_port,
            "ip_address": self.ip_address,
            "os": self.os.to_dict() if self.os else None,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Node:
        """Build a node from its registry entry."""
        port_raw = data.get("ssh_port")
        return cls(
            name=str(data["name"]),
            site=str(data.get("site") or "local"),
            hostname=_optional_str(data.get("hostname")),
            fqdn=_optional_str(data.get("fqdn")),
            ssh_user=_optional_str(data.get("ssh_user")),
            ssh_port=int(port_raw) if port_raw not in (None, "") else None,
            ip_address=_optional_str(data.get("ip_address")),
            os=OsInfo.from_mapping(data.get("os")),
        )


@dataclass(slots=True)
class MigrationRecord:
    """One append-only entry in a tenant's migration log."""

    kind: str
    started_at: str = field(default_factory=utc_now)
    status: str = "in_progress"
    steps: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    backup_archive: str | None = None
    completed_at: str | None = None
    error: str | None = None

    def add_step(self, step: str, status: str = "success", detail: str | None = None) -> None:
        """Record the outcome of one step."""
        entry: dict[str, object] = {"step": step, "status": status, "at": utc_now()}
        if detail:
            entry["detail"] = detail
        self.steps.append(entry)

    def finish(self, status: str, *, error: str | None = None) -> None:
        """Close the record with a final *status*."""
        self.status = status
        self.error = error
        self.completed_at = utc_now()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
            "backup_archive": self.backup_archive,
            "error": self.error,
        }


@dataclass(slots=True)
class Tenant:
    """A domain's hosting footprint on one node."""

    vhost: str
    vnode: str
    migration_status: MigrationStatus = MigrationStatus.DISCOVERED
    legacy_config: dict[str, str] | None = None
    validation: dict[str, Any] | None = None
    migration_backup_path: str | None = None
    rollback_available: bool = False
    migrated_at: str | None = None
    migration_log: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        """Return the tenant's unique ``vnode/vhost`` key."""
        return tenant_key(self.vnode, self.vhost)

    def latest_backup(self) -> str | None:
        """Return the most recent archive recorded by a migration attempt."""
        if self.migration_backup_path:
            return self.migration_backup_path
        for entry in reversed(self.migration_log):
            archive = entry.get("backup_archive")
            if isinstance(archive, str) and archive:
                return archive
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "vhost": self.vhost,
            "vnode": self.vnode,
            "migration_status": self.migration_status.value,
            "legacy_config": dict(self.legacy_config) if self.legacy_config else None,
            "validation": self.validation,
            "migration_backup_path": self.migration_backup_path,
            "rollback_available": self.rollback_available,
            "migrated_at": self.migrated_at,
            "migration_log": list(self.migration_log),
            "created_at": self.created_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Tenant:
        """Build a tenant from its registry entry."""
        legacy = data.get("legacy_config")
        validation = data.get("validation")
        log = data.get("migration_log")
        return cls(
            vhost=str(data["vhost"]),
            vnode=str(data["vnode"]),
            migration_status=MigrationStatus.parse(data.get("migration_status")),
            legacy_config=(
                {str(k): str(v) for k, v in legacy.items()}
                if isinstance(legacy, Mapping)
                else None
            ),
            validation=dict(validation) if isinstance(validation, Mapping) else None,
            migration_backup_path=_optional_str(data.get("migration_backup_path")),
            rollback_available=bool(data.get("rollback_available", False)),
            migrated_at=_optional_str(data.get("migrated_at")),
            migration_log=[dict(item) for item in log if isinstance(item, Mapping)]
            if isinstance(log, list)
            else [],
            created_at=str(data.get("created_at") or utc_now()),
        )


def tenant_key(vnode: str, vhost: str) -> str:
    """Return the registry key for a tenant."""
    return f"{vnode}/{vhost}"


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "MIGRATABLE_STATUSES",
    "MigrationRecord",
    "MigrationStatus",
    "Node",
    "OsInfo",
    "Tenant",
    "tenant_key",
    "utc_now",
]
