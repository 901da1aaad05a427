"""Legacy-to-web-centric layout migration and rollback.

A migration moves one tenant through::

    pending -> backup_created -> structurally_migrated -> permissions_updated
            -> verified -> migrated

with ``failed`` reachable from every step. The tenant is marked
``in_progress`` before the first remote step, which is what keeps two
mutating operations off the same tenant. Every attempt, successful or not,
appends one :class:`~vhostctl.models.MigrationRecord` to the tenant's log.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePosixPath

from . import scripts
from .cancellation import CancellationToken
from .errors import (
    CommandError,
    NotFoundError,
    PreconditionError,
    VerificationError,
    VhostctlError,
)
from .generator import profile_for
from .models import (
    MIGRATABLE_STATUSES,
    MigrationRecord,
    MigrationStatus,
    Node,
    Tenant,
    utc_now,
)
from .reconcile.actions import OwnershipRules, ServiceSet, apply_ownership, control_services
from .state.registry import StateRegistry
from .transport import Transport, require_success

logger = logging.getLogger(__name__)

VERIFICATION_MARKERS = (
    "app_public_exists",
    "log_dir_exists",
    "run_dir_exists",
    "index_file_exists",
)
MIN_VERIFIED_MARKERS = 3
ARCHIVE_PREFIX = "pre-migration-"
SKIPPED_BACKUP_WARNING = "Backup skipped by operator (--no-backup); rollback unavailable."

MIGRATION_STEPS = ("backup", "structural_migration", "permissions", "service_reload", "verification")
ROLLBACK_STEPS = ("stop_services", "restore", "permissions", "start_services")


class MigrationStep(str, Enum):
    """Position of a tenant in the migration state machine."""

    PENDING = "pending"
    BACKUP_CREATED = "backup_created"
    STRUCTURALLY_MIGRATED = "structurally_migrated"
    PERMISSIONS_UPDATED = "permissions_updated"
    VERIFIED = "verified"
    MIGRATED = "migrated"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RollbackPoint:
    """A backup archive present on the node."""

    path: str
    created_at: str
    size: int

    @property
    def name(self) -> str:
        """Return the archive file name."""
        return PurePosixPath(self.path).name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"path": self.path, "name": self.name, "created_at": self.created_at, "size": self.size}


@dataclass(slots=True)
class MigrationOutcome:
    """Result of a migration or rollback attempt."""

    tenant: Tenant
    record: MigrationRecord
    state: MigrationStep
    dry_run: bool = False
    changes: list[str] = field(default_factory=list)
    checks: list[str] = field(default_factory=list)
    error: VhostctlError | None = None

    @property
    def success(self) -> bool:
        """Return ``True`` when the attempt reached its goal."""
        return self.error is None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "tenant": self.tenant.key,
            "state": self.state.value,
            "success": self.success,
            "dry_run": self.dry_run,
            "migration_status": self.tenant.migration_status.value,
            "changes": list(self.changes),
            "checks": list(self.checks),
            "record": self.record.to_dict(),
            "error": str(self.error) if self.error else None,
        }


def _keyed_values(stdout: str, key: str) -> list[str]:
    prefix = f"{key}="
    for line in stdout.splitlines():
        if line.startswith(prefix):
            return [item for item in line[len(prefix):].strip().split(",") if item]
    return []


def _keyed_value(stdout: str, key: str) -> str | None:
    prefix = f"{key}="
    for line in stdout.splitlines():
        if line.startswith(prefix):
            return line[len(prefix):].strip() or None
    return None


class MigrationOrchestrator:
    """Run migrations and rollbacks for single tenants."""

    def __init__(
        self,
        transport: Transport,
        registry: StateRegistry,
        backup_root: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Store collaborators; *backup_root* lives outside every tenant tree."""
        self.transport = transport
        self.registry = registry
        self.backup_root = str(backup_root).rstrip("/")
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def archive_dir(self, vconf: Mapping[str, str]) -> str:
        """Return the directory holding the tenant's archives."""
        return f"{self.backup_root}/{vconf['VHOST']}"

    def _stamp(self) -> str:
        return self._clock().strftime("%Y%m%d-%H%M%S")

    def _load_vconf(self, tenant: Tenant) -> dict[str, str]:
        vconf = self.registry.load_vconf(tenant.key)
        missing = [key for key in ("VHOST", "UPATH", "WPATH", "U_UID", "U_GID") if not vconf.get(key)]
        if missing:
            raise PreconditionError(
                f"Tenant {tenant.key} has no usable desired configuration (missing {', '.join(missing)})."
            )
        return vconf

    @staticmethod
    def _checkpoint(cancel: CancellationToken | None, step: str) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled(step)

    def _current(self, tenant: Tenant) -> Tenant:
        """Return the stored record for *tenant*; callers may hold an old copy."""
        current = self.registry.get_tenant(tenant.vnode, tenant.vhost)
        if current is None:
            raise NotFoundError(f"Tenant {tenant.key} is no longer registered.")
        return current

    def _claim(self, tenant: Tenant, check: Callable[[Tenant], None]) -> Tenant:
        """Re-check the stored status and mark the tenant ``in_progress`` atomically."""
        with self.registry.transaction():
            current = self._current(tenant)
            check(current)
            return self.registry.update_tenant(
                current.vnode,
                current.vhost,
                {"migration_status": MigrationStatus.IN_PROGRESS},
            )

    def _record_failure(
        self,
        tenant: Tenant,
        record: MigrationRecord,
        *,
        keep_backup: bool,
    ) -> Tenant:
        updates: dict[str, object] = {"migration_status": MigrationStatus.FAILED}
        if keep_backup and record.backup_archive:
            updates["migration_backup_path"] = record.backup_archive
            updates["rollback_available"] = True
        with self.registry.transaction():
            self.registry.update_tenant(tenant.vnode, tenant.vhost, updates)
            self.registry.append_migration_log(tenant.vnode, tenant.vhost, record.to_dict())
            return self.registry.get_tenant(tenant.vnode, tenant.vhost) or tenant

    @staticmethod
    def _check_not_busy(tenant: Tenant) -> None:
        if tenant.migration_status is MigrationStatus.IN_PROGRESS:
            raise PreconditionError(f"Cannot roll back {tenant.key}: another operation is in progress.")

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------
    def preflight(self, tenant: Tenant) -> None:
        """Reject tenants that are not eligible for migration."""
        status = tenant.migration_status
        if status in MIGRATABLE_STATUSES:
            return
        reasons = {
            MigrationStatus.MIGRATED: "already migrated",
            MigrationStatus.NATIVE: "created in the current layout and needs no migration",
            MigrationStatus.IN_PROGRESS: "another operation is in progress",
            MigrationStatus.FAILED: "last migration failed; validate or roll back first",
        }
        reason = reasons.get(status, f"status '{status.value}' is not eligible")
        raise PreconditionError(f"Cannot migrate {tenant.key}: {reason}.")

    def create_backup(self, node: Node, vconf: Mapping[str, str]) -> str:
        """Archive the tenant tree outside of it and return the archive path."""
        upath = vconf["UPATH"].rstrip("/")
        archive_dir = self.archive_dir(vconf)
        if archive_dir == upath or archive_dir.startswith(f"{upath}/"):
            raise PreconditionError(f"Backup directory {archive_dir} lies inside {upath}.")
        result = self.transport.run(
            node,
            scripts.BACKUP_ARCHIVE,
            [upath, archive_dir, self._stamp()],
            privileged=True,
        )
        require_success(result, f"backup of {upath}")
        archive = _keyed_value(result.stdout, "ARCHIVE_PATH")
        if not archive:
            raise CommandError(
                f"backup of {upath} reported no archive path",
                remote_exit_code=result.exit_code,
                stdout=result.stdout,
            )
        return archive

    def structural_transform(self, node: Node, vconf: Mapping[str, str]) -> list[str]:
        """Move legacy subtrees into the web-centric layout; return what moved."""
        result = self.transport.run(
            node,
            scripts.STRUCTURAL_MIGRATE,
            [vconf["UPATH"], vconf["WPATH"]],
            privileged=True,
        )
        require_success(result, f"structural migration of {vconf['UPATH']}")
        return _keyed_values(result.stdout, "CHANGES")

    def normalize_permissions(self, node: Node, vconf: Mapping[str, str]) -> str:
        """Apply the tenant ownership rules."""
        return apply_ownership(self.transport, node, OwnershipRules.from_vconf(vconf))

    def reload_services(self, node: Node, vconf: Mapping[str, str]) -> str | None:
        """Reload the web stack; return a warning instead of raising on failure."""
        services = ServiceSet(profile_for(vconf).web_services(vconf), action="reload")
        try:
            control_services(self.transport, node, services)
        except VhostctlError as exc:
            logger.warning("Service reload on %s failed: %s", node.name, exc)
            return f"Service reload failed: {exc}"
        return None

    def verify(self, node: Node, vconf: Mapping[str, str]) -> list[str]:
        """Return the verification markers that hold on *node*."""
        result = self.transport.run(node, scripts.VERIFY_LAYOUT, [vconf["WPATH"]], privileged=True)
        require_success(result, f"verification of {vconf['WPATH']}")
        return [item for item in _keyed_values(result.stdout, "CHECKS") if item in VERIFICATION_MARKERS]

    def migrate(
        self,
        tenant: Tenant,
        node: Node,
        *,
        skip_backup: bool = False,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
    ) -> MigrationOutcome:
        """Migrate *tenant* to the web-centric layout.

        Raises :class:`PreconditionError` before touching anything when the
        tenant is not eligible. Failures after that point are returned on the
        outcome with the tenant marked ``failed`` and the partial log kept.
        """
        tenant = self._current(tenant)
        self.preflight(tenant)
        vconf = self._load_vconf(tenant)
        record = MigrationRecord(kind="migration")
        if skip_backup:
            record.warnings.append(SKIPPED_BACKUP_WARNING)

        if dry_run:
            for step in MIGRATION_STEPS:
                status = "skipped" if step == "backup" and skip_backup else "planned"
                record.add_step(step, status)
            record.finish("planned")
            return MigrationOutcome(tenant, record, MigrationStep.PENDING, dry_run=True)

        self._checkpoint(cancel, "migration")
        tenant = self._claim(tenant, self.preflight)
        state = MigrationStep.PENDING
        current = MIGRATION_STEPS[0]
        changes: list[str] = []
        checks: list[str] = []
        try:
            if skip_backup:
                record.add_step(current, "skipped", SKIPPED_BACKUP_WARNING)
            else:
                self._checkpoint(cancel, current)
                record.backup_archive = self.create_backup(node, vconf)
                record.add_step(current, "success", record.backup_archive)
            state = MigrationStep.BACKUP_CREATED

            current = "structural_migration"
            self._checkpoint(cancel, current)
            changes = self.structural_transform(node, vconf)
            record.add_step(current, "success", ", ".join(changes) or "no changes")
            state = MigrationStep.STRUCTURALLY_MIGRATED

            current = "permissions"
            self._checkpoint(cancel, current)
            record.add_step(current, "success", self.normalize_permissions(node, vconf))
            state = MigrationStep.PERMISSIONS_UPDATED

            current = "service_reload"
            self._checkpoint(cancel, current)
            warning = self.reload_services(node, vconf)
            if warning:
                record.warnings.append(warning)
                record.add_step(current, "warning", warning)
            else:
                record.add_step(current, "success")

            current = "verification"
            self._checkpoint(cancel, current)
            checks = self.verify(node, vconf)
            if len(checks) < MIN_VERIFIED_MARKERS:
                raise VerificationError(
                    f"Verification found {len(checks)} of {len(VERIFICATION_MARKERS)} markers "
                    f"({', '.join(checks) or 'none'}); at least {MIN_VERIFIED_MARKERS} required."
                )
            record.add_step(current, "success", ", ".join(checks))
            state = MigrationStep.VERIFIED
        except VhostctlError as exc:
            logger.warning("Migration of %s failed at %s: %s", tenant.key, current, exc)
            record.add_step(current, "failed", str(exc))
            record.finish("failed", error=str(exc))
            tenant = self._record_failure(tenant, record, keep_backup=True)
            return MigrationOutcome(
                tenant,
                record,
                MigrationStep.FAILED,
                changes=changes,
                checks=checks,
                error=exc,
            )
        except Exception as exc:
            logger.exception("Migration of %s aborted at %s", tenant.key, current)
            message = f"{type(exc).__name__}: {exc}"
            record.add_step(current, "failed", message)
            record.finish("failed", error=message)
            self._record_failure(tenant, record, keep_backup=True)
            raise

        record.finish("success")
        tenant = self.registry.update_tenant(
            tenant.vnode,
            tenant.vhost,
            {
                "migration_status": MigrationStatus.MIGRATED,
                "migrated_at": utc_now(),
                "migration_backup_path": record.backup_archive,
                "rollback_available": not skip_backup,
            },
        )
        self.registry.append_migration_log(tenant.vnode, tenant.vhost, record.to_dict())
        tenant = self.registry.get_tenant(tenant.vnode, tenant.vhost) or tenant
        logger.info("Migrated %s (state %s)", tenant.key, state.value)
        return MigrationOutcome(tenant, record, MigrationStep.MIGRATED, changes=changes, checks=checks)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def resolve_archive(self, tenant: Tenant, vconf: Mapping[str, str], archive: str | None) -> str:
        """Return the archive a rollback restores from."""
        if archive:
            if "/" not in archive:
                return f"{self.archive_dir(vconf)}/{archive}"
            return archive
        if not tenant.rollback_available:
            raise PreconditionError(f"No rollback available for {tenant.key}.")
        latest = tenant.latest_backup()
        if not latest:
            raise PreconditionError(f"No backup archive recorded for {tenant.key}.")
        return latest

    def rollback(
        self,
        tenant: Tenant,
        node: Node,
        archive: str | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> MigrationOutcome:
        """Restore *tenant* from *archive* (default: the latest recorded one)."""
        tenant = self._current(tenant)
        self._check_not_busy(tenant)
        vconf = self._load_vconf(tenant)
        source = self.resolve_archive(tenant, vconf, archive)
        profile = profile_for(vconf)
        services = profile.web_services(vconf)
        record = MigrationRecord(kind="rollback", backup_archive=source)

        self._checkpoint(cancel, "rollback")
        tenant = self._claim(tenant, self._check_not_busy)
        current = ROLLBACK_STEPS[0]
        try:
            try:
                control_services(self.transport, node, ServiceSet(services, action="stop"))
                record.add_step(current, "success", ", ".join(services))
            except CommandError as exc:
                record.warnings.append(f"Service stop failed: {exc}")
                record.add_step(current, "warning", str(exc))

            current = "restore"
            self._checkpoint(cancel, current)
            result = self.transport.run(
                node,
                scripts.RESTORE_ARCHIVE,
                [vconf["UPATH"], source, self._stamp()],
                privileged=True,
            )
            require_success(result, f"restore of {source}")
            record.add_step(current, "success", source)

            current = "permissions"
            self._checkpoint(cancel, current)
            record.add_step(current, "success", self.normalize_permissions(node, vconf))

            current = "start_services"
            try:
                control_services(self.transport, node, ServiceSet(services, action="start"))
                record.add_step(current, "success", ", ".join(services))
            except CommandError as exc:
                record.warnings.append(f"Service start failed: {exc}")
                record.add_step(current, "warning", str(exc))
        except VhostctlError as exc:
            logger.warning("Rollback of %s failed at %s: %s", tenant.key, current, exc)
            record.add_step(current, "failed", str(exc))
            record.finish("failed", error=str(exc))
            tenant = self._record_failure(tenant, record, keep_backup=False)
            return MigrationOutcome(tenant, record, MigrationStep.FAILED, error=exc)
        except Exception as exc:
            logger.exception("Rollback of %s aborted at %s", tenant.key, current)
            message = f"{type(exc).__name__}: {exc}"
            record.add_step(current, "failed", message)
            record.finish("failed", error=message)
            self._record_failure(tenant, record, keep_backup=False)
            raise

        record.finish("success")
        self.registry.update_tenant(
            tenant.vnode,
            tenant.vhost,
            {"migration_status": MigrationStatus.VALIDATED},
        )
        self.registry.append_migration_log(tenant.vnode, tenant.vhost, record.to_dict())
        tenant = self.registry.get_tenant(tenant.vnode, tenant.vhost) or tenant
        return MigrationOutcome(tenant, record, MigrationStep.ROLLED_BACK)

    def list_rollback_points(self, tenant: Tenant, node: Node) -> list[RollbackPoint]:
        """Return archives available on *node* for *tenant*, newest first."""
        vconf = self._load_vconf(tenant)
        result = self.transport.run(node, scripts.LIST_ARCHIVES, [self.archive_dir(vconf)], privileged=True)
        require_success(result, f"listing archives for {tenant.key}")
        points: list[RollbackPoint] = []
        for line in result.stdout.splitlines():
            parts = line.strip().split(" ", 2)
            if len(parts) != 3 or not parts[0].isdigit() or not parts[1].isdigit():
                continue
            if not PurePosixPath(parts[2]).name.startswith(ARCHIVE_PREFIX):
                continue
            created = datetime.fromtimestamp(int(parts[0]), UTC).isoformat()
            points.append(RollbackPoint(path=parts[2], created_at=created, size=int(parts[1])))
        points.sort(key=lambda point: point.created_at, reverse=True)
        return points


__all__ = [
    "ARCHIVE_PREFIX",
    "MIN_VERIFIED_MARKERS",
    "MigrationOrchestrator",
    "MigrationOutcome",
    "MigrationStep",
    "RollbackPoint",
    "VERIFICATION_MARKERS",
]
