"""Generate a tenant's desired configuration and push it onto its node."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .cancellation import CancellationToken
from .generator import CREDENTIAL_KEYS, ConfigurationGenerator, profile_for
from .models import MigrationStatus, Node, Tenant, tenant_key
from .reconcile.actions import (
    LayoutSpec,
    OwnershipRules,
    RepairAction,
    RepairKind,
    ServiceConfigSpec,
    ServiceSet,
    UserSpec,
)
from .reconcile.engine import ActionOutcome, run_actions
from .state.registry import StateRegistry
from .templates import (
    INDEX_TEMPLATE,
    POOL_TEMPLATE,
    SITE_TEMPLATE,
    TemplateEngine,
    index_context,
    pool_context,
    site_context,
)
from .transport import Transport

logger = logging.getLogger(__name__)

MASK = "********"


def mask_credentials(vconf: Mapping[str, str]) -> dict[str, str]:
    """Return *vconf* with generated credentials masked."""
    return {key: (MASK if key in CREDENTIAL_KEYS and value else value) for key, value in vconf.items()}


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of ``vhostctl generate`` / ``vhostctl provision``."""

    key: str
    vconf: dict[str, str]
    created: bool
    record_changed: bool
    dry_run: bool = False
    tenant: Tenant | None = None
    outcomes: list[ActionOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """Return ``True`` when every pushed action succeeded."""
        if self.cancelled:
            return False
        return all(outcome.status in ("planned", "success") for outcome in self.outcomes)

    def to_dict(self, *, reveal: bool = False) -> dict[str, object]:
        """Return a serialisable representation; credentials masked unless *reveal*."""
        return {
            "tenant": self.key,
            "created": self.created,
            "record_changed": self.record_changed,
            "dry_run": self.dry_run,
            "success": self.success,
            "vconf": dict(self.vconf) if reveal else mask_credentials(self.vconf),
            "actions": [outcome.to_dict() for outcome in self.outcomes],
        }


class Provisioner:
    """Create tenants and converge their nodes to the desired configuration."""

    def __init__(
        self,
        registry: StateRegistry,
        generator: ConfigurationGenerator,
        templates: TemplateEngine,
        transport: Transport,
    ) -> None:
        """Store collaborators."""
        self.registry = registry
        self.generator = generator
        self.templates = templates
        self.transport = transport

    def reserved_uids(self, vnode: str) -> set[int]:
        """Return UIDs already assigned to registered tenants on *vnode*."""
        uids: set[int] = set()
        for tenant in self.registry.read_tenants():
            if tenant.vnode != vnode:
                continue
            value = self.registry.load_vconf(tenant.key).get("U_UID", "")
            if value.isdigit():
                uids.add(int(value))
        return uids

    def generate(
        self,
        vhost: str,
        node: Node,
        *,
        overrides: Mapping[str, str] | None = None,
        dry_run: bool = False,
    ) -> ProvisionResult:
        """Compute and (unless *dry_run*) store the configuration of *vhost*.

        An existing tenant keeps its identity and credentials.
        """
        vhost = vhost.strip().lower()
        key = tenant_key(node.name, vhost)
        tenant = self.registry.get_tenant(node.name, vhost)
        existing = self.registry.load_vconf(key) if tenant is not None else {}
        vconf = self.generator.generate(
            node,
            vhost,
            overrides,
            existing=existing or None,
            reserved_uids=self.reserved_uids(node.name),
        )
        created = tenant is None
        changed = vconf != existing
        if dry_run:
            return ProvisionResult(key, vconf, created, changed, dry_run=True, tenant=tenant)

        changed = self.registry.save_vconf(key, vconf)
        if tenant is None:
            tenant = Tenant(vhost=vhost, vnode=node.name, migration_status=MigrationStatus.NATIVE)
            self.registry.save_tenant(tenant)
            logger.info("Registered tenant %s with user %s", key, vconf["UUSER"])
        return ProvisionResult(key, vconf, created, changed, tenant=tenant)

    def plan(self, vconf: Mapping[str, str]) -> list[RepairAction]:
        """Return the actions that converge a node onto *vconf*."""
        profile = profile_for(vconf)
        rules = OwnershipRules.from_vconf(vconf)
        user = UserSpec.from_vconf(vconf)
        pool_path = profile.pool_path(vconf)
        site_path = profile.site_path(vconf)
        index_path = f"{vconf['WPATH']}/app/public/index.html"
        services = profile.web_services(vconf)
        return [
            RepairAction(
                RepairKind.CREATE_USER,
                "provision.user.create",
                f"Create user {user.user} with UID {user.uid}",
                user,
            ),
            RepairAction(
                RepairKind.CREATE_LAYOUT,
                "provision.layout.create",
                f"Create directory layout under {vconf['UPATH']}",
                LayoutSpec.from_vconf(vconf),
            ),
            RepairAction(
                RepairKind.WRITE_SERVICE_CONFIG,
                "provision.web.index",
                f"Install placeholder page {index_path}",
                ServiceConfigSpec(
                    "index",
                    index_path,
                    self.templates.render_to_string(INDEX_TEMPLATE, index_context(vconf)),
                ),
            ),
            RepairAction(
                RepairKind.NORMALIZE_PERMISSIONS,
                "provision.ownership.apply",
                f"Apply ownership rules to {rules.upath}",
                rules,
            ),
            RepairAction(
                RepairKind.WRITE_SERVICE_CONFIG,
                "provision.config.pool",
                f"Install pool file {pool_path}",
                ServiceConfigSpec(
                    "pool",
                    pool_path,
                    self.templates.render_to_string(POOL_TEMPLATE, pool_context(vconf)),
                ),
            ),
            RepairAction(
                RepairKind.WRITE_SERVICE_CONFIG,
                "provision.config.site",
                f"Install site file {site_path}",
                ServiceConfigSpec(
                    "site",
                    site_path,
                    self.templates.render_to_string(SITE_TEMPLATE, site_context(vconf)),
                ),
            ),
            RepairAction(
                RepairKind.RESTART_SERVICES,
                "provision.services.reload",
                f"Reload {', '.join(services)}",
                ServiceSet(services, action="reload"),
            ),
        ]

    def provision(
        self,
        vhost: str,
        node: Node,
        *,
        overrides: Mapping[str, str] | None = None,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
    ) -> ProvisionResult:
        """Generate (or reuse) the configuration of *vhost* and push it to *node*."""
        result = self.generate(vhost, node, overrides=overrides, dry_run=dry_run)
        actions = self.plan(result.vconf)
        if dry_run:
            result.outcomes = [ActionOutcome(action, "planned") for action in actions]
            return result
        outcomes, stopped = run_actions(
            actions,
            transport=self.transport,
            node=node,
            registry=self.registry,
            tenant_key=result.key,
            cancel=cancel,
        )
        result.outcomes = outcomes
        result.cancelled = stopped == "cancelled"
        return result


__all__ = ["MASK", "ProvisionResult", "Provisioner", "mask_credentials"]
