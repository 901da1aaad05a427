"""Planning and execution for ``vhostctl repair``.

Each warning or error category maps to exactly one kind of repair. Record
decisions (identity and web group) are made first so every later action is
built from the configuration as it will read after the repair. Actions run
sequentially; each outcome is recorded on its own and a failed action does
not undo the ones before it.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from ..cancellation import CancellationToken
from ..errors import (
    CommandError,
    NotFoundError,
    OperationCancelled,
    PreconditionError,
    TransportError,
)
from ..generator import OsProfile, profile_for
from ..models import MigrationStatus, Node, Tenant
from ..state.registry import StateRegistry
from ..templates import (
    POOL_TEMPLATE,
    SITE_TEMPLATE,
    TemplateEngine,
    pool_context,
    site_context,
)
from ..transport import Transport
from ..validator.engine import DriftValidator
from ..validator.models import Finding, FindingCategory, Severity, ValidationResult
from .actions import (
    LayoutSpec,
    OwnershipRules,
    RecordUpdate,
    RepairAction,
    RepairKind,
    SecuritySpec,
    ServiceConfigSpec,
    ServiceSet,
    UserSpec,
    execute_action,
)
from .strategies import OwnershipEvidence, OwnershipStrategy, TrustLiveHost

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["planned", "success", "failed", "skipped"]
StopReason = Literal["cancelled", "unreachable"] | None

# Categories whose findings are reported but never repaired automatically.
UNREPAIRABLE: frozenset[FindingCategory] = frozenset(
    {FindingCategory.FOOTPRINT, FindingCategory.RECORD, FindingCategory.TRANSPORT}
)

CATEGORY_ACTIONS: Mapping[FindingCategory, RepairKind] = {
    FindingCategory.VCONF_MISMATCH: RepairKind.FIX_OWNERSHIP,
    FindingCategory.WEB_GROUP: RepairKind.UPDATE_RECORD,
    FindingCategory.USER: RepairKind.CREATE_USER,
    FindingCategory.DIRECTORY: RepairKind.CREATE_LAYOUT,
    FindingCategory.PERMISSIONS: RepairKind.NORMALIZE_PERMISSIONS,
    FindingCategory.SECURITY: RepairKind.TIGHTEN_SECURITY,
    FindingCategory.CONFIG_FILE: RepairKind.WRITE_SERVICE_CONFIG,
    FindingCategory.SERVICE: RepairKind.RESTART_SERVICES,
}


@dataclass(slots=True)
class ActionOutcome:
    """Result of one planned or executed action."""

    action: RepairAction
    status: OutcomeStatus
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = self.action.to_dict()
        payload["status"] = self.status
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class RepairReport:
    """Everything a repair run planned, did and observed."""

    tenant: str
    dry_run: bool
    strategy: str
    before: ValidationResult
    outcomes: list[ActionOutcome] = field(default_factory=list)
    after: ValidationResult | None = None
    cancelled: bool = False

    @property
    def actions(self) -> list[RepairAction]:
        """Return the planned actions in execution order."""
        return [outcome.action for outcome in self.outcomes]

    @property
    def failed(self) -> list[ActionOutcome]:
        """Return outcomes that failed."""
        return [outcome for outcome in self.outcomes if outcome.status == "failed"]

    @property
    def success(self) -> bool:
        """Return ``True`` when no action failed and the run was not cut short."""
        if self.cancelled:
            return False
        return all(outcome.status in ("planned", "success") for outcome in self.outcomes)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "tenant": self.tenant,
            "dry_run": self.dry_run,
            "strategy": self.strategy,
            "success": self.success,
            "cancelled": self.cancelled,
            "status_before": self.before.status.value,
            "status_after": self.after.status.value if self.after else None,
            "actions": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(slots=True)
class _Plan:
    vconf: dict[str, str]
    profile: OsProfile
    actions: dict[str, RepairAction] = field(default_factory=dict)
    restart: list[str] = field(default_factory=list)
    identity_from_host: bool = False

    def add(self, action: RepairAction) -> None:
        self.actions.setdefault(action.step_id, action)

    def restart_services(self, services: Sequence[str]) -> None:
        for service in services:
            if service not in self.restart:
                self.restart.append(service)


def run_actions(
    actions: Sequence[RepairAction],
    *,
    transport: Transport,
    node: Node,
    registry: StateRegistry,
    tenant_key: str,
    cancel: CancellationToken | None = None,
) -> tuple[list[ActionOutcome], StopReason]:
    """Execute *actions* in order; return outcomes and why the run stopped early, if it did.

    A transport failure skips every remaining action since the node is not
    reachable; a command failure is recorded and the next action still runs.
    """
    outcomes: list[ActionOutcome] = []
    remaining = list(actions)
    while remaining:
        action = remaining.pop(0)
        try:
            if cancel is not None:
                cancel.raise_if_cancelled(action.step_id)
        except OperationCancelled as exc:
            outcomes.append(ActionOutcome(action, "skipped", str(exc)))
            outcomes.extend(ActionOutcome(item, "skipped", "cancelled") for item in remaining)
            return outcomes, "cancelled"
        try:
            detail = execute_action(
                action,
                transport=transport,
                node=node,
                registry=registry,
                tenant_key=tenant_key,
            )
        except TransportError as exc:
            logger.warning("%s on %s: %s", action.step_id, node.name, exc)
            outcomes.append(ActionOutcome(action, "failed", str(exc)))
            outcomes.extend(
                ActionOutcome(item, "skipped", "node unreachable") for item in remaining
            )
            return outcomes, "unreachable"
        except CommandError as exc:
            logger.warning("%s on %s: %s", action.step_id, node.name, exc)
            outcomes.append(ActionOutcome(action, "failed", str(exc)))
            continue
        outcomes.append(ActionOutcome(action, "success", detail))
    return outcomes, None


class ReconciliationEngine:
    """Turn validation findings into repairs and apply them."""

    def __init__(
        self,
        transport: Transport,
        registry: StateRegistry,
        validator: DriftValidator,
        templates: TemplateEngine,
        strategy: OwnershipStrategy | None = None,
    ) -> None:
        """Store collaborators; the ownership strategy defaults to :class:`TrustLiveHost`."""
        self.transport = transport
        self.registry = registry
        self.validator = validator
        self.templates = templates
        self.strategy: OwnershipStrategy = strategy or TrustLiveHost()
        self._builders: dict[RepairKind, Callable[[Finding, _Plan], None]] = {
            RepairKind.CREATE_USER: self._plan_user,
            RepairKind.CREATE_LAYOUT: self._plan_layout,
            RepairKind.NORMALIZE_PERMISSIONS: self._plan_permissions,
            RepairKind.TIGHTEN_SECURITY: self._plan_security,
            RepairKind.WRITE_SERVICE_CONFIG: self._plan_service_config,
            RepairKind.RESTART_SERVICES: self._plan_restart,
        }

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def plan(self, vconf: Mapping[str, str], result: ValidationResult) -> list[RepairAction]:
        """Return the repairs for *result*, in execution order."""
        plan = _Plan(vconf=dict(vconf), profile=profile_for(vconf))
        findings = [
            finding
            for finding in result.actionable
            if finding.severity in (Severity.WARNING, Severity.ERROR)
            and finding.category not in UNREPAIRABLE
        ]

        for finding in findings:
            if finding.category is FindingCategory.VCONF_MISMATCH:
                self._plan_identity(finding, plan)
            elif finding.category is FindingCategory.WEB_GROUP:
                self._plan_web_group(finding, plan)

        for finding in findings:
            kind = CATEGORY_ACTIONS[finding.category]
            builder = self._builders.get(kind)
            if builder is not None:
                builder(finding, plan)

        if plan.restart:
            plan.add(
                RepairAction(
                    RepairKind.RESTART_SERVICES,
                    "repair.services.restart",
                    f"Restart {', '.join(plan.restart)}",
                    ServiceSet(tuple(plan.restart)),
                    FindingCategory.SERVICE,
                )
            )
        return sorted(plan.actions.values(), key=lambda action: action.kind.order)

    def _plan_identity(self, finding: Finding, plan: _Plan) -> None:
        evidence = OwnershipEvidence.from_finding(plan.vconf, finding.data)
        decision = self.strategy.decide(evidence)
        if decision.trust == "host":
            plan.identity_from_host = True
            plan.vconf.update(decision.record_changes)
            plan.add(
                RepairAction(
                    RepairKind.UPDATE_RECORD,
                    "repair.record.identity",
                    f"Rewrite stored identity: {decision.reason}",
                    RecordUpdate(dict(decision.record_changes), decision.reason),
                    finding.category,
                )
            )
            return
        rules = OwnershipRules.from_vconf(plan.vconf)
        plan.add(
            RepairAction(
                RepairKind.FIX_OWNERSHIP,
                "repair.ownership.fix",
                f"Chown {rules.upath} to {rules.uid}:{rules.gid} ({decision.reason})",
                rules,
                finding.category,
            )
        )

    def _plan_web_group(self, finding: Finding, plan: _Plan) -> None:
        expected = finding.expected or plan.profile.web_group
        plan.vconf["WUGID"] = expected
        plan.add(
            RepairAction(
                RepairKind.UPDATE_RECORD,
                "repair.record.web_group",
                f"Set stored web group to {expected}",
                RecordUpdate({"WUGID": expected}, f"{plan.profile.family} web server group"),
                finding.category,
            )
        )

    def _plan_user(self, finding: Finding, plan: _Plan) -> None:
        if plan.identity_from_host:
            return
        spec = UserSpec.from_vconf(plan.vconf)
        plan.add(
            RepairAction(
                RepairKind.CREATE_USER,
                "repair.user.create",
                f"Create user {spec.user} with UID {spec.uid}",
                spec,
                finding.category,
            )
        )

    def _plan_layout(self, finding: Finding, plan: _Plan) -> None:
        spec = LayoutSpec.from_vconf(plan.vconf)
        plan.add(
            RepairAction(
                RepairKind.CREATE_LAYOUT,
                "repair.layout.create",
                f"Create directory layout under {spec.upath}",
                spec,
                finding.category,
            )
        )
        self._plan_permissions(finding, plan)

    def _plan_permissions(self, finding: Finding, plan: _Plan) -> None:
        if plan.identity_from_host and finding.category is FindingCategory.PERMISSIONS:
            return
        rules = OwnershipRules.from_vconf(plan.vconf)
        plan.add(
            RepairAction(
                RepairKind.NORMALIZE_PERMISSIONS,
                "repair.ownership.normalize",
                f"Apply ownership rules to {rules.upath}",
                rules,
                finding.category,
            )
        )

    def _plan_security(self, finding: Finding, plan: _Plan) -> None:
        wpath = plan.vconf["WPATH"]
        plan.add(
            RepairAction(
                RepairKind.TIGHTEN_SECURITY,
                "repair.security.modes",
                f"Reset directory modes under {wpath}",
                SecuritySpec(wpath),
                finding.category,
            )
        )

    def _plan_service_config(self, finding: Finding, plan: _Plan) -> None:
        artifact = str(finding.data.get("artifact", ""))
        if artifact == "pool":
            content = self.templates.render_to_string(POOL_TEMPLATE, pool_context(plan.vconf))
            path = plan.profile.pool_path(plan.vconf)
        elif artifact == "site":
            content = self.templates.render_to_string(SITE_TEMPLATE, site_context(plan.vconf))
            path = plan.profile.site_path(plan.vconf)
        else:
            return
        plan.add(
            RepairAction(
                RepairKind.WRITE_SERVICE_CONFIG,
                f"repair.config.{artifact}",
                f"Install {artifact} file {path}",
                ServiceConfigSpec(artifact, path, content),
                finding.category,
            )
        )
        plan.restart_services(plan.profile.web_services(plan.vconf))

    def _plan_restart(self, finding: Finding, plan: _Plan) -> None:
        service = finding.data.get("service")
        if service:
            plan.restart_services([str(service)])

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def repair(
        self,
        tenant: Tenant,
        node: Node,
        *,
        result: ValidationResult | None = None,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
    ) -> RepairReport:
        """Validate (unless *result* is given), plan, and apply repairs.

        After a real run the tenant is validated again and the fresh snapshot
        is written back. A tenant another operation has marked
        ``in_progress`` is refused with :class:`PreconditionError`.
        """
        current = self.registry.get_tenant(tenant.vnode, tenant.vhost)
        if current is None:
            raise NotFoundError(f"Tenant {tenant.key} is no longer registered.")
        if current.migration_status is MigrationStatus.IN_PROGRESS:
            raise PreconditionError(f"Cannot repair {tenant.key}: another operation is in progress.")
        tenant = current
        vconf = self.registry.load_vconf(tenant.key)
        before = result if result is not None else self.validator.validate(tenant, node, vconf)
        actions = self.plan(vconf, before)
        report = RepairReport(
            tenant=tenant.key,
            dry_run=dry_run,
            strategy=self.strategy.name,
            before=before,
        )
        if dry_run:
            report.outcomes = [ActionOutcome(action, "planned") for action in actions]
            return report

        outcomes, stopped = run_actions(
            actions,
            transport=self.transport,
            node=node,
            registry=self.registry,
            tenant_key=tenant.key,
            cancel=cancel,
        )
        report.outcomes = outcomes
        report.cancelled = stopped == "cancelled"
        if actions and stopped != "unreachable":
            report.after = self.validator.validate(tenant, node)
            self.validator.write_back(tenant, report.after)
        elif not actions:
            report.after = before
            self.validator.write_back(tenant, before)
        return report


__all__ = [
    "ActionOutcome",
    "CATEGORY_ACTIONS",
    "ReconciliationEngine",
    "RepairReport",
    "UNREPAIRABLE",
    "run_actions",
]
