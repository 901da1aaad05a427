"""Identity resolution: bare domain -> (site, node, domain).

Every command that touches a node resolves its tenant here first. The state
registry is authoritative; the legacy variable tree is consulted only when
the registry has no match at all.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .errors import AmbiguousError, NotFoundError
from .models import Node, Tenant
from .state.registry import StateRegistry
from .varfiles import VarFileRegistry

Source = Literal["store", "filesystem-fallback"]


@dataclass(slots=True, frozen=True)
class ResolvedIdentity:
    """Fully-qualified tenant identity plus provenance."""

    vsite: str
    vnode: str
    vhost: str
    source: Source
    tenant: Tenant | None = None
    node: Node | None = None

    @property
    def key(self) -> str:
        """Return the tenant key ``vnode/vhost``."""
        return f"{self.vnode}/{self.vhost}"

    def triple(self) -> dict[str, str]:
        """Return the identity triple."""
        return {"vsite": self.vsite, "vnode": self.vnode, "vhost": self.vhost}


class IdentityResolver:
    """Resolve tenants against the registry with a filesystem fallback."""

    def __init__(self, registry: StateRegistry, var_files: VarFileRegistry | None = None) -> None:
        """Store the primary and secondary registries."""
        self.registry = registry
        self.var_files = var_files

    def resolve(
        self,
        vhost: str,
        *,
        vnode: str | None = None,
        vsite: str | None = None,
    ) -> ResolvedIdentity:
        """Return the single tenant matching *vhost* and the optional hints.

        Raises :class:`NotFoundError` when nothing matches and
        :class:`AmbiguousError` (carrying every candidate) when more than one
        tenant matches.
        """
        vhost = vhost.strip().lower()
        if not vhost:
            raise NotFoundError("A domain name is required.")

        if vnode and vsite:
            return self._resolve_exact(vhost, vnode, vsite)

        matches = self.registry.find_tenants(vhost, vnode=vnode, vsite=vsite)
        if len(matches) == 1:
            tenant, node = matches[0]
            return ResolvedIdentity(
                vsite=node.site if node else "local",
                vnode=tenant.vnode,
                vhost=tenant.vhost,
                source="store",
                tenant=tenant,
                node=node,
            )
        if len(matches) > 1:
            candidates = [
                {
                    "vsite": node.site if node else "local",
                    "vnode": tenant.vnode,
                    "vhost": tenant.vhost,
                }
                for tenant, node in matches
            ]
            raise AmbiguousError(
                f"Domain '{vhost}' exists on {len(candidates)} nodes; pass --node to choose one.",
                candidates,
            )
        return self._resolve_fallback(vhost, vnode=vnode, vsite=vsite)

    def _resolve_exact(self, vhost: str, vnode: str, vsite: str) -> ResolvedIdentity:
        tenant = self.registry.get_tenant(vnode, vhost)
        node = self.registry.get_node(vnode)
        if tenant is not None:
            if node is not None and node.site != vsite:
                raise NotFoundError(
                    f"Node '{vnode}' belongs to site '{node.site}', not '{vsite}'."
                )
            return ResolvedIdentity(vsite, vnode, vhost, "store", tenant, node)
        if self.var_files is not None and self.var_files.path_for(vsite, vnode, vhost).is_file():
            return ResolvedIdentity(vsite, vnode, vhost, "filesystem-fallback", None, node)
        raise NotFoundError(f"Tenant '{vhost}' not found on node '{vnode}' in site '{vsite}'.")

    def _resolve_fallback(
        self,
        vhost: str,
        *,
        vnode: str | None,
        vsite: str | None,
    ) -> ResolvedIdentity:
        entries = self.var_files.find(vhost, vnode=vnode, vsite=vsite) if self.var_files else []
        if not entries:
            hint = f" on node '{vnode}'" if vnode else ""
            raise NotFoundError(f"Tenant '{vhost}'{hint} not found.")
        if len(entries) > 1:
            raise AmbiguousError(
                f"Domain '{vhost}' exists on {len(entries)} nodes; pass --node to choose one.",
                [entry.triple() for entry in entries],
            )
        entry = entries[0]
        return ResolvedIdentity(
            vsite=entry.vsite,
            vnode=entry.vnode,
            vhost=entry.vhost,
            source="filesystem-fallback",
            tenant=None,
            node=self.registry.get_node(entry.vnode),
        )


__all__ = ["IdentityResolver", "ResolvedIdentity"]
