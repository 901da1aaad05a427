"""Tests for layout migration and rollback."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from conftest import TenantFactory
from fakes import FakeHost

from vhostctl.cancellation import CancellationToken
from vhostctl.errors import OperationCancelled, PreconditionError, VerificationError
from vhostctl.migration import (
    SKIPPED_BACKUP_WARNING,
    VERIFICATION_MARKERS,
    MigrationOrchestrator,
    MigrationStep,
)
from vhostctl.models import MigrationStatus, Node
from vhostctl.state import StateRegistry

BACKUP_ROOT = "/var/backups/vhostctl"


def _ticking_clock() -> Callable[[], datetime]:
    start = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    counter = itertools.count()
    return lambda: start + timedelta(minutes=next(counter))


def _orchestrator(host: FakeHost, registry: StateRegistry, backup_root: str = BACKUP_ROOT) -> MigrationOrchestrator:
    return MigrationOrchestrator(host, registry, backup_root, clock=_ticking_clock())


def test_legacy_tenant_migrates(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A legacy tree is backed up, restructured and verified."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    wpath = vconf["WPATH"]

    outcome = _orchestrator(host, registry).migrate(tenant, node)

    assert outcome.success, outcome.error
    assert outcome.state is MigrationStep.MIGRATED
    assert outcome.checks == list(VERIFICATION_MARKERS)
    assert outcome.changes == [
        "created_web_app_dir",
        "moved_var_log",
        "moved_var_run",
        "restructured_web_content",
    ]
    assert host.is_file(f"{wpath}/app/public/index.html")
    assert host.is_file(f"{wpath}/app/public/assets/site.css")
    assert host.is_file(f"{wpath}/log/access.log")
    assert not host.is_dir(f"{vconf['UPATH']}/var/log")

    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None
    assert stored.migration_status is MigrationStatus.MIGRATED
    assert stored.rollback_available
    assert stored.migrated_at
    assert stored.migration_backup_path == outcome.record.backup_archive
    assert stored.migration_backup_path.startswith(f"{BACKUP_ROOT}/example.com/pre-migration-")
    assert [entry["status"] for entry in stored.migration_log] == ["success"]
    assert [step["step"] for step in stored.migration_log[0]["steps"]] == [
        "backup",
        "structural_migration",
        "permissions",
        "service_reload",
        "verification",
    ]


def test_structural_transform_is_idempotent(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Running the transform on a migrated tree changes nothing."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    orchestrator.migrate(tenant, node)
    before = dict(host.paths)

    assert orchestrator.structural_transform(node, vconf) == []
    assert host.paths == before


@pytest.mark.parametrize(
    "status",
    [MigrationStatus.MIGRATED, MigrationStatus.NATIVE, MigrationStatus.IN_PROGRESS, MigrationStatus.FAILED],
)
def test_preflight_rejects_ineligible_tenants(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
    status: MigrationStatus,
) -> None:
    """Only discovered or validated tenants can migrate."""
    tenant, _ = make_tenant(status=status)

    with pytest.raises(PreconditionError):
        _orchestrator(host, registry).migrate(tenant, node)

    assert host.calls == []
    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None and stored.migration_status is status


def test_verification_gate_fails_sparse_tree(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Fewer than three markers fail the migration but keep the backup."""
    tenant, vconf = make_tenant()
    host.add_user(vconf["UUSER"], 1001, home=vconf["UPATH"])
    for path in (vconf["UPATH"], vconf["WPATH"], f"{vconf['UPATH']}/var/log"):
        host.add_dir(path, uid=1001, gid=1001)

    outcome = _orchestrator(host, registry).migrate(tenant, node)

    assert outcome.state is MigrationStep.FAILED
    assert isinstance(outcome.error, VerificationError)
    assert outcome.checks == ["app_public_exists", "log_dir_exists"]
    assert outcome.record.steps[-1]["step"] == "verification"
    assert outcome.record.steps[-1]["status"] == "failed"
    assert outcome.tenant.migration_status is MigrationStatus.FAILED
    assert outcome.tenant.rollback_available
    assert outcome.tenant.migration_log[-1]["status"] == "failed"


def test_dry_run_touches_nothing(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A dry run plans every step without contacting the node."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)

    outcome = _orchestrator(host, registry).migrate(tenant, node, dry_run=True)

    assert outcome.dry_run
    assert outcome.state is MigrationStep.PENDING
    assert {step["status"] for step in outcome.record.steps} == {"planned"}
    assert host.calls == []
    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None and stored.migration_status is MigrationStatus.DISCOVERED


def test_skipped_backup_disables_rollback(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Without a backup the tenant migrates but cannot roll back."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)

    outcome = orchestrator.migrate(tenant, node, skip_backup=True)

    assert outcome.success
    assert SKIPPED_BACKUP_WARNING in outcome.record.warnings
    assert (outcome.record.steps[0]["step"], outcome.record.steps[0]["status"]) == ("backup", "skipped")
    assert not outcome.tenant.rollback_available
    assert host.archives == {}
    with pytest.raises(PreconditionError):
        orchestrator.rollback(outcome.tenant, node)


def test_backup_inside_tenant_tree_is_refused(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """An archive directory inside the tree being archived fails the run."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)

    outcome = _orchestrator(host, registry, backup_root="/srv").migrate(tenant, node)

    assert isinstance(outcome.error, PreconditionError)
    assert outcome.tenant.migration_status is MigrationStatus.FAILED
    assert not outcome.tenant.rollback_available
    assert host.archives == {}


def test_cancellation_before_start_leaves_tenant_untouched(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A token cancelled up front raises before any remote step."""
    tenant, _ = make_tenant()
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        _orchestrator(host, registry).migrate(tenant, node, cancel=token)

    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None and stored.migration_status is MigrationStatus.DISCOVERED
    assert host.calls == []


def test_cancellation_mid_run_keeps_backup(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Cancelling after the backup fails the run with rollback available."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    token = CancellationToken()
    orchestrator = _orchestrator(host, registry)
    original = orchestrator.create_backup

    def backup_then_cancel(target: Node, values: dict[str, str]) -> str:
        archive = original(target, values)
        token.cancel("operator abort")
        return archive

    monkeypatch.setattr(orchestrator, "create_backup", backup_then_cancel)

    outcome = orchestrator.migrate(tenant, node, cancel=token)

    assert isinstance(outcome.error, OperationCancelled)
    assert outcome.record.steps[-1]["step"] == "structural_migration"
    assert outcome.tenant.rollback_available
    assert host.is_file(f"{vconf['WPATH']}/index.html")


def test_failed_reload_is_only_a_warning(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A service reload failure does not fail the migration."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    host.broken_services.add("nginx")

    outcome = _orchestrator(host, registry).migrate(tenant, node)

    assert outcome.success
    assert any(warning.startswith("Service reload failed") for warning in outcome.record.warnings)


def test_rollback_restores_legacy_tree(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Rolling back restores the archived tree and re-validates the status."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    migrated = orchestrator.migrate(tenant, node)

    outcome = orchestrator.rollback(migrated.tenant, node)

    assert outcome.state is MigrationStep.ROLLED_BACK
    assert outcome.record.backup_archive == migrated.record.backup_archive
    assert host.is_file(f"{vconf['WPATH']}/index.html")
    assert not host.is_dir(f"{vconf['WPATH']}/app")
    assert outcome.tenant.migration_status is MigrationStatus.VALIDATED
    assert [entry["kind"] for entry in outcome.tenant.migration_log] == ["migration", "rollback"]
    assert host.services["nginx"] is True


def test_rollback_points_and_named_archive(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Archives are listed newest first and can be restored by name."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    first = orchestrator.migrate(tenant, node)
    rolled_back = orchestrator.rollback(first.tenant, node)
    second = orchestrator.migrate(rolled_back.tenant, node)

    points = orchestrator.list_rollback_points(second.tenant, node)

    assert [point.path for point in points] == [
        second.record.backup_archive,
        first.record.backup_archive,
    ]
    assert all(point.name.startswith("pre-migration-") for point in points)

    outcome = orchestrator.rollback(second.tenant, node, points[-1].name)
    assert outcome.success
    assert outcome.record.backup_archive == first.record.backup_archive


def test_rollback_of_missing_archive_fails(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A restore failure marks the tenant failed."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)

    outcome = _orchestrator(host, registry).rollback(tenant, node, "/var/backups/none.tar.gz")

    assert not outcome.success
    assert outcome.record.steps[-1]["step"] == "restore"
    assert outcome.tenant.migration_status is MigrationStatus.FAILED


def test_stale_snapshot_cannot_migrate_twice(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """Eligibility is checked against the stored status, not the caller's copy."""
    tenant, vconf = make_tenant(status=MigrationStatus.VALIDATED)
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    first = orchestrator.migrate(tenant, node)

    with pytest.raises(PreconditionError, match="already migrated"):
        orchestrator.migrate(tenant, node)

    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None
    assert stored.migration_status is MigrationStatus.MIGRATED
    assert stored.migration_backup_path == first.record.backup_archive
    assert len(host.archives) == 1
    assert len(stored.migration_log) == 1


def test_stale_snapshot_cannot_roll_back_busy_tenant(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
) -> None:
    """A rollback sees an in-progress status written after the caller read the tenant."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    migrated = orchestrator.migrate(tenant, node)
    registry.update_tenant(node.name, tenant.vhost, {"migration_status": MigrationStatus.IN_PROGRESS})

    with pytest.raises(PreconditionError, match="in progress"):
        orchestrator.rollback(migrated.tenant, node)


def test_unexpected_error_marks_tenant_failed(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An exception outside the error taxonomy never leaves the tenant in progress."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)

    def broken_transform(target: Node, values: dict[str, str]) -> list[str]:
        raise KeyError("WPATH")

    monkeypatch.setattr(orchestrator, "structural_transform", broken_transform)

    with pytest.raises(KeyError):
        orchestrator.migrate(tenant, node)

    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None
    assert stored.migration_status is MigrationStatus.FAILED
    assert stored.rollback_available
    assert stored.migration_backup_path is not None
    assert stored.migration_backup_path.startswith(f"{BACKUP_ROOT}/example.com/pre-migration-")
    entry = stored.migration_log[-1]
    assert entry["status"] == "failed"
    assert (entry["steps"][-1]["step"], entry["steps"][-1]["status"]) == ("structural_migration", "failed")
    assert "KeyError" in entry["error"]


def test_unexpected_rollback_error_marks_tenant_failed(
    host: FakeHost,
    registry: StateRegistry,
    node: Node,
    make_tenant: TenantFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A rollback interrupted by a plain exception is recorded as failed."""
    tenant, vconf = make_tenant()
    host.seed_legacy_tenant(vconf)
    orchestrator = _orchestrator(host, registry)
    migrated = orchestrator.migrate(tenant, node)

    def broken_permissions(target: Node, values: dict[str, str]) -> str:
        raise OSError("registry volume gone")

    monkeypatch.setattr(orchestrator, "normalize_permissions", broken_permissions)

    with pytest.raises(OSError):
        orchestrator.rollback(migrated.tenant, node)

    stored = registry.get_tenant(node.name, tenant.vhost)
    assert stored is not None
    assert stored.migration_status is MigrationStatus.FAILED
    assert stored.migration_log[-1]["kind"] == "rollback"
