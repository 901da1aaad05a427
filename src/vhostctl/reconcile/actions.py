"""Typed repair actions and their remote execution.

Every action carries a data payload whose type is fixed by its kind, so the
executor never inspects free-form strings to decide what to do.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

from .. import scripts
from ..generator import web_group_for
from ..transport import require_success

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..models import Node
    from ..state.registry import StateRegistry
    from ..transport import Transport
    from ..validator.models import FindingCategory


class RepairKind(str, Enum):
    """Closed set of repair actions, in execution order."""

    UPDATE_RECORD = "update-record"
    FIX_OWNERSHIP = "fix-ownership"
    CREATE_USER = "create-user"
    CREATE_LAYOUT = "create-layout"
    NORMALIZE_PERMISSIONS = "normalize-permissions"
    TIGHTEN_SECURITY = "tighten-security"
    WRITE_SERVICE_CONFIG = "write-service-config"
    RESTART_SERVICES = "restart-services"

    @property
    def order(self) -> int:
        """Return the execution position of this kind."""
        return list(RepairKind).index(self)


@dataclass(slots=True, frozen=True)
class OwnershipRules:
    """Ownership the tenant tree must have when the record is trusted."""

    upath: str
    wpath: str
    uid: str
    gid: str
    web_group: str

    @classmethod
    def from_vconf(cls, vconf: Mapping[str, str]) -> OwnershipRules:
        """Derive the rules from a desired configuration."""
        return cls(
            upath=vconf["UPATH"],
            wpath=vconf["WPATH"],
            uid=vconf["U_UID"],
            gid=vconf["U_GID"],
            web_group=web_group_for(vconf),
        )

    def args(self) -> list[str]:
        """Return the positional arguments of the ownership script."""
        return [self.upath, self.wpath, self.uid, self.gid, self.web_group]


@dataclass(slots=True, frozen=True)
class RecordUpdate:
    """Rewrite of stored configuration keys to match the node."""

    changes: Mapping[str, str]
    reason: str


@dataclass(slots=True, frozen=True)
class UserSpec:
    """System account to create for a tenant."""

    user: str
    uid: str
    gid: str
    shell: str
    home: str
    comment: str
    password: str | None = field(default=None, repr=False)

    @classmethod
    def from_vconf(cls, vconf: Mapping[str, str]) -> UserSpec:
        """Derive the account from a desired configuration."""
        return cls(
            user=vconf["UUSER"],
            uid=vconf["U_UID"],
            gid=vconf.get("U_GID") or vconf["U_UID"],
            shell=vconf.get("U_SHL") or "/bin/sh",
            home=vconf["UPATH"],
            comment=vconf["VHOST"],
            password=vconf.get("UPASS") or None,
        )


@dataclass(slots=True, frozen=True)
class LayoutSpec:
    """Directory tree of a tenant in the web-centric layout."""

    upath: str
    wpath: str
    mpath: str

    @classmethod
    def from_vconf(cls, vconf: Mapping[str, str]) -> LayoutSpec:
        """Derive the tree from a desired configuration."""
        return cls(upath=vconf["UPATH"], wpath=vconf["WPATH"], mpath=vconf["MPATH"])


@dataclass(slots=True, frozen=True)
class SecuritySpec:
    """Web root whose directory modes are tightened."""

    wpath: str


@dataclass(slots=True, frozen=True)
class ServiceConfigSpec:
    """A rendered configuration file to install when absent."""

    artifact: str
    path: str
    content: str = field(repr=False)
    mode: str = "644"


@dataclass(slots=True, frozen=True)
class ServiceSet:
    """Services to act upon through the init system."""

    services: tuple[str, ...]
    action: str = "restart"


RepairData = Union[
    OwnershipRules,
    RecordUpdate,
    UserSpec,
    LayoutSpec,
    SecuritySpec,
    ServiceConfigSpec,
    ServiceSet,
]

DATA_TYPES: Mapping[RepairKind, type] = {
    RepairKind.UPDATE_RECORD: RecordUpdate,
    RepairKind.FIX_OWNERSHIP: OwnershipRules,
    RepairKind.CREATE_USER: UserSpec,
    RepairKind.CREATE_LAYOUT: LayoutSpec,
    RepairKind.NORMALIZE_PERMISSIONS: OwnershipRules,
    RepairKind.TIGHTEN_SECURITY: SecuritySpec,
    RepairKind.WRITE_SERVICE_CONFIG: ServiceConfigSpec,
    RepairKind.RESTART_SERVICES: ServiceSet,
}


@dataclass(slots=True, frozen=True)
class RepairAction:
    """Single repair the engine can apply."""

    kind: RepairKind
    step_id: str
    description: str
    data: RepairData
    finding: FindingCategory | None = None

    def __post_init__(self) -> None:
        """Reject payloads that do not belong to the action kind."""
        expected = DATA_TYPES[self.kind]
        if not isinstance(self.data, expected):
            raise TypeError(
                f"{self.kind.value} requires {expected.__name__}, got {type(self.data).__name__}"
            )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without secrets."""
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "step_id": self.step_id,
            "description": self.description,
        }
        if self.finding is not None:
            payload["finding"] = self.finding.value
        return payload


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def apply_ownership(transport: Transport, node: Node, rules: OwnershipRules) -> str:
    """Apply the tenant ownership rules on *node*."""
    result = transport.run(node, scripts.APPLY_OWNERSHIP, rules.args(), privileged=True)
    require_success(result, f"ownership of {rules.upath}")
    return result.stdout.strip().replace("\n", ", ")


def control_services(
    transport: Transport,
    node: Node,
    services: ServiceSet,
) -> str:
    """Run the init-system *action* for each service on *node*."""
    result = transport.run(
        node,
        scripts.SERVICE_CONTROL,
        [services.action, *services.services],
        privileged=True,
    )
    require_success(result, f"{services.action} {', '.join(services.services)}")
    return f"{services.action}: {', '.join(services.services)}"


def execute_action(
    action: RepairAction,
    *,
    transport: Transport,
    node: Node,
    registry: StateRegistry,
    tenant_key: str,
) -> str:
    """Run *action* and return a short detail string.

    Raises :class:`~vhostctl.errors.TransportError` or
    :class:`~vhostctl.errors.CommandError` when the remote side fails.
    """
    data = action.data
    if isinstance(data, RecordUpdate):
        current = registry.load_vconf(tenant_key)
        current.update(data.changes)
        changed = registry.save_vconf(tenant_key, current)
        keys = ", ".join(sorted(data.changes))
        return f"record updated ({keys})" if changed else "record already current"
    if isinstance(data, OwnershipRules):
        return apply_ownership(transport, node, data)
    if isinstance(data, UserSpec):
        script = scripts.CREATE_USER
        if data.password:
            script = scripts.with_assignments(script, {"UPASS": data.password})
        result = transport.run(
            node,
            script,
            [data.user, data.uid, data.gid, data.shell, data.home, data.comment],
            privileged=True,
        )
        require_success(result, f"create user {data.user}")
        return result.stdout.strip()
    if isinstance(data, LayoutSpec):
        result = transport.run(
            node,
            scripts.CREATE_LAYOUT,
            [data.upath, data.wpath, data.mpath],
            privileged=True,
        )
        require_success(result, f"create layout under {data.upath}")
        created = [line.split("\t", 1)[-1] for line in result.stdout.splitlines() if line]
        return f"created {len(created)} directories"
    if isinstance(data, SecuritySpec):
        result = transport.run(node, scripts.TIGHTEN_SECURITY, [data.wpath], privileged=True)
        require_success(result, f"tighten modes under {data.wpath}")
        return f"modes tightened under {data.wpath}"
    if isinstance(data, ServiceConfigSpec):
        result = transport.run(
            node,
            scripts.WRITE_FILE,
            [data.path, data.mode, data.content],
            privileged=True,
        )
        require_success(result, f"write {data.path}")
        return result.stdout.strip()
    return control_services(transport, node, data)


__all__ = [
    "LayoutSpec",
    "OwnershipRules",
    "RecordUpdate",
    "RepairAction",
    "RepairData",
    "RepairKind",
    "SecuritySpec",
    "ServiceConfigSpec",
    "ServiceSet",
    "UserSpec",
    "apply_ownership",
    "control_services",
    "execute_action",
]
