"""Execution harness for drift validation."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Mapping, Sequence

from ..errors import CommandError, TransportError
from ..generator import profile_for
from ..models import MigrationStatus, Node, Tenant
from ..state.registry import StateRegistry
from ..transport import Transport
from .checks import collect_checks
from .models import (
    CheckContext,
    CheckDefinition,
    Finding,
    FindingCategory,
    Severity,
    ValidationResult,
    build_result,
)

logger = logging.getLogger(__name__)

PROMOTABLE_STATUSES = frozenset({MigrationStatus.DISCOVERED, MigrationStatus.FAILED})


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(check: CheckDefinition, exc: Exception) -> Finding:
    return Finding(
        check.id,
        check.category,
        Severity.CRITICAL,
        f"Check '{check.id}' raised an unexpected error: {exc}",
        data={"exception": repr(exc), "traceback": traceback.format_exc()},
    )


def run_checks(
    context: CheckContext,
    checks: Sequence[CheckDefinition],
) -> tuple[list[Finding], bool]:
    """Run *checks* in order; return findings and whether the run was cut short."""
    findings: list[Finding] = []
    record_usable = True
    for check in checks:
        if check.requires_record and not record_usable:
            continue
        try:
            produced = check.run(context)
        except TransportError as exc:
            findings.append(
                Finding(
                    check.id,
                    FindingCategory.TRANSPORT,
                    Severity.CRITICAL,
                    f"Node {context.node.name} unreachable: {exc}",
                    data={"output": exc.output, "exit_code": exc.remote_exit_code},
                )
            )
            return findings, True
        except CommandError as exc:
            findings.append(
                Finding(
                    check.id,
                    FindingCategory.TRANSPORT,
                    Severity.ERROR,
                    str(exc),
                    data={"exit_code": exc.remote_exit_code, "stdout": exc.stdout},
                )
            )
            continue
        except Exception as exc:  # noqa: BLE001 - surfaced as a finding
            findings.append(_unexpected_failure(check, exc))
            continue
        findings.extend(produced)
        if not check.requires_record and any(
            item.severity is Severity.CRITICAL for item in produced
        ):
            record_usable = False
    return findings, False


class DriftValidator:
    """Compare a tenant's desired configuration with its node."""

    def __init__(
        self,
        transport: Transport,
        registry: StateRegistry,
        checks: Sequence[CheckDefinition] | None = None,
    ) -> None:
        """Store collaborators and the ordered check battery."""
        self.transport = transport
        self.registry = registry
        self.checks = tuple(checks) if checks is not None else collect_checks()

    def validate(
        self,
        tenant: Tenant,
        node: Node,
        vconf: Mapping[str, str] | None = None,
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> ValidationResult:
        """Re-probe *node* and return fresh findings for *tenant*."""
        desired = dict(vconf) if vconf is not None else self.registry.load_vconf(tenant.key)
        context = CheckContext(
            tenant=tenant,
            node=node,
            vconf=desired,
            transport=self.transport,
            profile=profile_for(desired),
        )
        start = time.perf_counter()
        findings, interrupted = run_checks(context, self.checks)
        run_metadata: dict[str, object] = {
            "node": node.name,
            "duration_ms": _duration_ms(start),
            "check_count": len(self.checks),
            "interrupted": interrupted,
        }
        if metadata:
            run_metadata.update(metadata)
        result = build_result(tenant.key, findings, run_metadata)
        logger.debug("Validated %s: %s", tenant.key, result.status.value)
        return result

    def write_back(self, tenant: Tenant, result: ValidationResult) -> Tenant:
        """Store *result* as the tenant's validation snapshot.

        Promotion is decided against the stored status, not the snapshot the
        caller validated, so a migration that finished in the meantime keeps
        its status.
        """
        with self.registry.transaction():
            current = self.registry.get_tenant(tenant.vnode, tenant.vhost) or tenant
            updates: dict[str, object] = {"validation": result.to_dict()}
            if result.status.is_healthy and current.migration_status in PROMOTABLE_STATUSES:
                updates["migration_status"] = MigrationStatus.VALIDATED
            return self.registry.update_tenant(tenant.vnode, tenant.vhost, updates)

    def run(self, tenant: Tenant, node: Node) -> tuple[ValidationResult, Tenant]:
        """Validate *tenant* and write the snapshot back."""
        result = self.validate(tenant, node)
        return result, self.write_back(tenant, result)


__all__ = ["DriftValidator", "PROMOTABLE_STATUSES", "run_checks"]
