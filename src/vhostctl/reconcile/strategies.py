"""Ownership strategies deciding which side wins an identity mismatch.

When the stored identity and the owner of the tenant's base directory
disagree, either side may be the one an administrator changed by hand. A
strategy looks only at the evidence gathered by the validator and returns a
decision; it never touches the transport, so it can be tested on its own.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol


@dataclass(slots=True, frozen=True)
class TenantUser:
    """A tenant-specific ``u<N>`` system account found on the node."""

    name: str
    uid: int
    gid: int


@dataclass(slots=True, frozen=True)
class OwnershipEvidence:
    """What the record says and what the node shows."""

    record_user: str
    record_uid: str
    record_gid: str
    owner_user: str
    owner_uid: int
    owner_gid: int
    tenant_user: TenantUser | None = None

    @classmethod
    def from_finding(cls, vconf: Mapping[str, str], data: Mapping[str, Any]) -> OwnershipEvidence:
        """Build evidence from a ``vconf_mismatch`` finding payload."""
        raw_user = data.get("tenant_user")
        tenant_user = None
        if isinstance(raw_user, Mapping) and raw_user.get("name"):
            tenant_user = TenantUser(
                name=str(raw_user["name"]),
                uid=int(raw_user["uid"]),
                gid=int(raw_user["gid"]),
            )
        return cls(
            record_user=vconf.get("UUSER", ""),
            record_uid=vconf.get("U_UID", ""),
            record_gid=vconf.get("U_GID", ""),
            owner_user=str(data.get("owner_user", "")),
            owner_uid=int(data.get("owner_uid", -1)),
            owner_gid=int(data.get("owner_gid", -1)),
            tenant_user=tenant_user,
        )


@dataclass(slots=True, frozen=True)
class OwnershipDecision:
    """Outcome of an ownership strategy."""

    trust: Literal["host", "record"]
    reason: str
    record_changes: Mapping[str, str] = field(default_factory=dict)


class OwnershipStrategy(Protocol):
    """Decide whether the node or the record is authoritative."""

    name: str

    def decide(self, evidence: OwnershipEvidence) -> OwnershipDecision:
        """Return the decision for *evidence*."""
        ...


@dataclass(slots=True, frozen=True)
class TrustLiveHost:
    """Prefer a tenant-specific user that already owns the base directory.

    If such a user exists the record is rewritten to match it; otherwise the
    record wins and the node is ``chown``-ed.
    """

    name: str = "trust-live-host"

    def decide(self, evidence: OwnershipEvidence) -> OwnershipDecision:
        """Return ``host`` when a live tenant user owns the tree."""
        user = evidence.tenant_user
        if user is not None and user.uid == evidence.owner_uid:
            changes = {
                "UUSER": user.name,
                "DUSER": user.name,
                "U_UID": str(user.uid),
                "U_GID": str(user.gid),
            }
            return OwnershipDecision(
                trust="host",
                reason=f"tenant user {user.name} ({user.uid}) owns the base directory",
                record_changes=changes,
            )
        return OwnershipDecision(
            trust="record",
            reason="no tenant-specific user owns the base directory",
        )


@dataclass(slots=True, frozen=True)
class TrustRecord:
    """Always treat the stored record as authoritative."""

    name: str = "trust-record"

    def decide(self, evidence: OwnershipEvidence) -> OwnershipDecision:
        """Return ``record`` unconditionally."""
        return OwnershipDecision(trust="record", reason="record forced authoritative")


__all__ = [
    "OwnershipDecision",
    "OwnershipEvidence",
    "OwnershipStrategy",
    "TenantUser",
    "TrustLiveHost",
    "TrustRecord",
]
