"""Typer-powered command line for ``vhostctl``.

Every command resolves its tenant through the identity resolver, runs inside
a structured log operation and translates :class:`~vhostctl.errors.VhostctlError`
into a printed reason plus the matching exit code.
"""
from __future__ import annotations

import re
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .cancellation import CancellationToken
from .config import AppConfig, ConfigError, load_config
from .errors import AmbiguousError, CommandError, TransportError, VhostctlError
from .exit_codes import ExitCode
from .fleet import sweep
from .generator import ConfigurationGenerator, detect_fqdn, detect_os, profile_for
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .migration import MigrationOrchestrator, MigrationOutcome
from .models import MigrationStatus, Node, Tenant, tenant_key
from .provision import ProvisionResult, Provisioner, mask_credentials
from .reconcile import ReconciliationEngine, RepairReport, TrustLiveHost, TrustRecord
from .resolver import IdentityResolver, ResolvedIdentity
from .state import StateRegistry, StateRegistryError
from .templates import (
    INDEX_TEMPLATE,
    POOL_TEMPLATE,
    SITE_TEMPLATE,
    TemplateEngine,
    TemplateRenderError,
    index_context,
    pool_context,
    site_context,
)
from .transport import ConnectionPool, SSHTransport, Transport
from .validator import DriftValidator, Severity, ValidationResult
from .varfiles import VarFileError, VarFileRegistry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)
NODE_OPTION = typer.Option(None, "--node", "-n", help="Node hosting the tenant.")
SITE_OPTION = typer.Option(None, "--site", help="Site grouping of the node.")
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")
OVERRIDE_OPTION = typer.Option(
    None,
    "--override",
    "-o",
    help="Override a configuration key (KEY=value); may be repeated.",
)
_OVERRIDE_RE = re.compile(r"^([A-Z][A-Z0-9_]*)=(.*)$")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Virtual host tenant lifecycle manager.

        Generates per-tenant configurations, validates them against the
        managed nodes, repairs drift and migrates legacy layouts.
        """
    ).strip(),
)
node_app = typer.Typer(help="Register and inspect managed nodes.")
fleet_app = typer.Typer(help="Run single-tenant operations across the fleet.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(node_app, name="node")
app.add_typer(fleet_app, name="fleet")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    var_files: VarFileRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    transport: Transport
    resolver: IdentityResolver
    generator: ConfigurationGenerator
    validator: DriftValidator
    engine: ReconciliationEngine
    orchestrator: MigrationOrchestrator
    provisioner: Provisioner


def _build_transport(config: AppConfig) -> tuple[Transport, ConnectionPool | None]:
    """Return the SSH transport and the connection pool it owns."""
    pool = ConnectionPool(
        config.runtime_dir / "ssh",
        persist=config.ssh.control_persist,
        ssh_bin=config.ssh.ssh_bin,
    )
    transport = SSHTransport(
        pool=pool,
        ssh_bin=config.ssh.ssh_bin,
        default_user=config.ssh.user,
        default_port=config.ssh.port,
        connect_timeout=config.ssh.connect_timeout,
        command_timeout=config.ssh.command_timeout,
        options=tuple(config.ssh.options),
    )
    return transport, pool


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    var_files = VarFileRegistry(config.var_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    transport, pool = _build_transport(config)
    if pool is not None:
        ctx.call_on_close(pool.close)
    generator = ConfigurationGenerator(transport, defaults=dict(config.generator.defaults))
    validator = DriftValidator(transport, registry)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        var_files=var_files,
        locks=locks,
        logger=logger,
        templates=templates,
        transport=transport,
        resolver=IdentityResolver(registry, var_files),
        generator=generator,
        validator=validator,
        engine=ReconciliationEngine(transport, registry, validator, templates),
        orchestrator=MigrationOrchestrator(transport, registry, str(config.backups.root)),
        provisioner=Provisioner(registry, generator, templates, transport),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"vhostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _failure(op: OperationScope, exc: VhostctlError) -> NoReturn:
    """Report *exc* with any captured remote output and exit."""
    if isinstance(exc, AmbiguousError):
        table = Table(show_header=True, header_style="bold magenta", title="Candidates")
        table.add_column("Site")
        table.add_column("Node", style="bold")
        table.add_column("Domain")
        for candidate in exc.candidates:
            table.add_row(candidate["vsite"], candidate["vnode"], candidate["vhost"])
        console.print(table)
    output = ""
    if isinstance(exc, TransportError):
        output = exc.output
    elif isinstance(exc, CommandError):
        output = exc.stdout.strip()
    if output:
        console.print(output, markup=False, highlight=False)
    _command_error(op, str(exc), rc=int(exc.exit_code))


@contextmanager
def _tenant_lock(runtime: RuntimeContext, op: OperationScope, key: str) -> Iterator[None]:
    try:
        with runtime.locks.mutate_tenants([key]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            yield
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _parse_overrides(op: OperationScope, raw: Sequence[str] | None) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in raw or ():
        match = _OVERRIDE_RE.match(item)
        if match is None:
            _command_error(op, f"Invalid override '{item}'; expected KEY=value with an upper-case key.")
        overrides[match.group(1)] = match.group(2)
    return overrides


def _resolve(
    runtime: RuntimeContext,
    op: OperationScope,
    vhost: str,
    node: str | None,
    site: str | None,
) -> ResolvedIdentity:
    try:
        identity = runtime.resolver.resolve(vhost, vnode=node, vsite=site)
    except VhostctlError as exc:
        _failure(op, exc)
    op.add_step("resolve", status="success", detail=f"{identity.key} ({identity.source})")
    return identity


def _require_tenant(op: OperationScope, identity: ResolvedIdentity) -> tuple[Tenant, Node]:
    if identity.tenant is None:
        _command_error(
            op,
            f"Tenant '{identity.vhost}' exists only in the variable tree "
            f"({identity.vsite}/{identity.vnode}); run 'vhostctl import' first.",
        )
    if identity.node is None:
        _command_error(op, f"Node '{identity.vnode}' is not registered.")
    return identity.tenant, identity.node


def _require_node(runtime: RuntimeContext, op: OperationScope, name: str) -> Node:
    node = runtime.registry.get_node(name)
    if node is None:
        _command_error(op, f"Node '{name}' is not registered.")
    return node


def _render_validation(result: ValidationResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Severity", style="bold")
    table.add_column("Category")
    table.add_column("Message")
    styles = {
        Severity.CRITICAL: "red",
        Severity.ERROR: "red",
        Severity.WARNING: "yellow",
        Severity.PASSED: "green",
    }
    for finding in result.findings:
        style = styles[finding.severity]
        table.add_row(
            f"[{style}]{finding.severity.value}[/{style}]",
            finding.category.value,
            finding.message,
        )
    console.print(table)
    console.print(f"Status: [bold]{result.status.value}[/bold]")


def _render_actions(outcomes: Sequence[object], *, title: str | None = None) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Action", style="bold")
    table.add_column("Status")
    table.add_column("Description")
    table.add_column("Detail")
    if not outcomes:
        table.add_row("(none)", "", "", "")
    for outcome in outcomes:
        payload = outcome.to_dict()  # type: ignore[attr-defined]
        table.add_row(
            str(payload["kind"]),
            str(payload["status"]),
            str(payload["description"]),
            str(payload.get("detail", "")),
        )
    console.print(table)


def _render_outcome(outcome: MigrationOutcome) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for step in outcome.record.steps:
        table.add_row(str(step.get("step")), str(step.get("status")), str(step.get("detail", "")))
    console.print(table)
    for warning in outcome.record.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@node_app.command("add")
def node_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Stable node name."),
    site: str = typer.Option("local", "--site", help="Site grouping of the node."),
    hostname: str | None = typer.Option(None, "--hostname", help="Network address (defaults to the name)."),
    fqdn: str | None = typer.Option(None, "--fqdn", help="Administrative FQDN of the node."),
    ssh_user: str | None = typer.Option(None, "--ssh-user", help="Remote login user."),
    ssh_port: int | None = typer.Option(None, "--ssh-port", help="Remote SSH port."),
    ip_address: str | None = typer.Option(None, "--ip", help="Primary IPv4 address."),
) -> None:
    """Register or update a managed node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node add",
        args={"name": name, "site": site, "hostname": hostname, "fqdn": fqdn},
        target={"kind": "node", "name": name},
    ) as op:
        existing = runtime.registry.get_node(name)
        node = Node(
            name=name,
            site=site,
            hostname=hostname,
            fqdn=fqdn,
            ssh_user=ssh_user,
            ssh_port=ssh_port,
            ip_address=ip_address,
            os=existing.os if existing else None,
        )
        runtime.registry.upsert_node(node)
        op.add_step("registry.nodes", status="success", detail=name)
        verb = "updated" if existing else "registered"
        console.print(f"[green]Node '{name}' {verb}.[/green]")
        op.success(f"Node {verb}.", changed=1)


@node_app.command("list")
def node_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered nodes."""
    runtime = _get_runtime(ctx)
    nodes = runtime.registry.read_nodes()
    with runtime.logger.operation(
        "node list",
        args={"json": json_output},
        target={"kind": "node", "scope": "registry"},
    ) as op:
        if json_output:
            console.print_json(data={"nodes": [node.to_dict() for node in nodes]})
            op.success("Reported node list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Site")
        table.add_column("Address")
        table.add_column("FQDN")
        table.add_column("OS")
        if not nodes:
            table.add_row("(none)", "", "", "", "")
        for node in nodes:
            os_label = f"{node.os.ostyp} {node.os.osrel}" if node.os else ""
            table.add_row(node.name, node.site, node.address, node.admin_fqdn, os_label)
        console.print(table)
        op.success("Reported node list.", changed=0)


@node_app.command("show")
def node_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a registered node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node show",
        args={"name": name, "json": json_output},
        target={"kind": "node", "name": name},
    ) as op:
        node = _require_node(runtime, op, name)
        data = node.to_dict()
        if json_output:
            console.print_json(data=data)
            op.success("Displayed node as JSON.", changed=0)
            return
        table = Table(show_header=False)
        for key, value in data.items():
            if value in (None, ""):
                continue
            table.add_row(key.replace("_", " ").title(), str(value))
        console.print(table)
        op.success("Displayed node details.", changed=0)


@node_app.command("detect")
def node_detect(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node to probe."),
) -> None:
    """Probe a node's OS and FQDN and store them."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node detect",
        args={"name": name},
        target={"kind": "node", "name": name},
    ) as op:
        node = _require_node(runtime, op, name)
        os_info = detect_os(runtime.transport, node)
        if os_info is None:
            _command_error(
                op,
                f"Could not read /etc/os-release on node '{name}'.",
                rc=int(ExitCode.ENVIRONMENT),
            )
        op.add_step("probe.os", status="success", detail=os_info.ostyp)
        detected = node.with_os(os_info)
        if node.fqdn is None:
            fqdn = detect_fqdn(runtime.transport, node)
            if fqdn:
                detected = detected.with_fqdn(fqdn)
                op.add_step("probe.fqdn", status="success", detail=fqdn)
            else:
                op.add_step("probe.fqdn", status="skipped", detail="not reported")
        runtime.registry.upsert_node(detected)
        console.print(
            f"[green]Node '{name}': {os_info.ostyp} {os_info.osrel} ({os_info.osmir}), "
            f"admin FQDN {detected.admin_fqdn}.[/green]"
        )
        op.success(
            "Detected node OS.",
            changed=1,
            context={**os_info.to_dict(), "fqdn": detected.fqdn},
        )


# ---------------------------------------------------------------------------
# Generation and provisioning
# ---------------------------------------------------------------------------


def _target_node(
    runtime: RuntimeContext,
    op: OperationScope,
    vhost: str,
    node: str | None,
    site: str | None,
) -> Node:
    if node:
        target = _require_node(runtime, op, node)
        if site and target.site != site:
            _command_error(op, f"Node '{node}' belongs to site '{target.site}', not '{site}'.")
        return target
    try:
        identity = runtime.resolver.resolve(vhost, vsite=site)
    except VhostctlError as exc:
        if isinstance(exc, AmbiguousError):
            _failure(op, exc)
        _command_error(op, f"Tenant '{vhost}' is not registered; pass --node to choose its node.")
    if identity.node is None:
        _command_error(op, f"Node '{identity.vnode}' is not registered.")
    return identity.node


def _print_generation(result: ProvisionResult, *, reveal: bool) -> None:
    vconf = result.vconf if reveal else mask_credentials(result.vconf)
    table = Table(show_header=True, header_style="bold magenta", title=result.key)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key in sorted(vconf):
        table.add_row(key, vconf[key])
    console.print(table)


@app.command()
def generate(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    override: list[str] | None = OVERRIDE_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without storing."),
    reveal: bool = typer.Option(False, "--reveal", help="Show generated credentials."),
) -> None:
    """Generate and store a tenant configuration without touching the node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "generate",
        args={"vhost": vhost, "node": node, "site": site, "dry_run": dry_run},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        overrides = _parse_overrides(op, override)
        target = _target_node(runtime, op, vhost, node, site)
        key = tenant_key(target.name, vhost.strip().lower())
        with _tenant_lock(runtime, op, key):
            try:
                result = runtime.provisioner.generate(
                    vhost, target, overrides=overrides, dry_run=dry_run
                )
            except VhostctlError as exc:
                _failure(op, exc)
            except (StateRegistryError, ValueError) as exc:
                _command_error(op, str(exc))
        _print_generation(result, reveal=reveal)
        if dry_run:
            _dry_run_complete(op, f"configuration for {key} not stored.")
            return
        op.add_step("registry.vconf", status="success" if result.record_changed else "skipped")
        verb = "created" if result.created else "updated"
        console.print(
            f"[green]Tenant {key} {verb}: user {result.vconf['UUSER']} "
            f"uid {result.vconf['U_UID']}.[/green]"
        )
        op.success(f"Tenant configuration {verb}.", changed=int(result.record_changed))


@app.command()
def provision(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    override: list[str] | None = OVERRIDE_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the actions that would be taken without applying changes.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Generate a tenant configuration and push it onto its node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "provision",
        args={"vhost": vhost, "node": node, "site": site, "dry_run": dry_run},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        overrides = _parse_overrides(op, override)
        target = _target_node(runtime, op, vhost, node, site)
        key = tenant_key(target.name, vhost.strip().lower())
        with _tenant_lock(runtime, op, key):
            try:
                result = runtime.provisioner.provision(
                    vhost, target, overrides=overrides, dry_run=dry_run
                )
            except VhostctlError as exc:
                _failure(op, exc)
        for outcome in result.outcomes:
            op.add_step(outcome.action.step_id, status=outcome.status, detail=outcome.detail or None)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_actions(result.outcomes, title=key)
        if dry_run:
            _dry_run_complete(op, f"{len(result.outcomes)} actions planned for {key}.")
            return
        if not result.success:
            failed = [o.action.step_id for o in result.outcomes if o.status != "success"]
            _command_error(
                op,
                f"Provisioning of {key} incomplete.",
                rc=int(ExitCode.PROVIDER),
                errors=failed,
            )
        console.print(f"[green]Tenant {key} provisioned.[/green]")
        op.success("Tenant provisioned.", changed=len(result.outcomes))


# ---------------------------------------------------------------------------
# Validation, repair, migration
# ---------------------------------------------------------------------------


@app.command()
def validate(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare a tenant's desired configuration with its node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"vhost": vhost, "node": node, "site": site, "json": json_output},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        with _tenant_lock(runtime, op, tenant.key):
            result, _ = runtime.validator.run(tenant, target)
        op.add_step("validate", status=result.status.value)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_validation(result)
        if not result.status.is_healthy:
            _command_error(
                op,
                f"Validation of {tenant.key}: {result.status.value}.",
                rc=int(ExitCode.VALIDATION),
                errors=[item.message for item in result.issues],
            )
        op.success(
            f"Validation {result.status.value}.",
            changed=0,
            warnings=[item.message for item in result.warnings],
        )


def _print_repair(report: RepairReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return
    _render_actions(report.outcomes, title=f"{report.tenant} ({report.strategy})")
    if report.after is not None and not report.dry_run:
        console.print(f"Status after repair: [bold]{report.after.status.value}[/bold]")


@app.command()
def repair(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the planned repairs without applying them.",
    ),
    trust_record: bool = typer.Option(
        False,
        "--trust-record",
        help="Always chown the node to the stored identity.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Repair drift between a tenant's record and its node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repair",
        args={"vhost": vhost, "node": node, "dry_run": dry_run, "trust_record": trust_record},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        engine = runtime.engine
        if trust_record:
            engine.strategy = TrustRecord()
        else:
            engine.strategy = TrustLiveHost()
        with _tenant_lock(runtime, op, tenant.key):
            try:
                report = engine.repair(tenant, target, dry_run=dry_run, cancel=CancellationToken())
            except VhostctlError as exc:
                _failure(op, exc)
        for outcome in report.outcomes:
            op.add_step(outcome.action.step_id, status=outcome.status, detail=outcome.detail or None)
        _print_repair(report, json_output=json_output)
        if dry_run:
            _dry_run_complete(
                op,
                f"{len(report.outcomes)} repairs planned for {tenant.key}.",
                context={"actions": [a.kind.value for a in report.actions]},
            )
            return
        if not report.success:
            _command_error(
                op,
                f"Repair of {tenant.key} incomplete: {len(report.failed)} action(s) failed.",
                rc=int(ExitCode.PROVIDER),
                errors=[outcome.detail for outcome in report.failed],
            )
        console.print(f"[green]Repair of {tenant.key} complete.[/green]")
        op.success("Repair complete.", changed=len(report.outcomes))


@app.command()
def migrate(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip the pre-migration archive (rollback becomes unavailable).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report the migration steps without running them.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Migrate a legacy tenant to the web-centric layout."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={"vhost": vhost, "node": node, "no_backup": no_backup, "dry_run": dry_run},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        with _tenant_lock(runtime, op, tenant.key):
            try:
                outcome = runtime.orchestrator.migrate(
                    tenant,
                    target,
                    skip_backup=no_backup,
                    dry_run=dry_run,
                    cancel=CancellationToken(),
                )
            except VhostctlError as exc:
                _failure(op, exc)
        for step in outcome.record.steps:
            op.add_step(f"migration.{step['step']}", status=str(step["status"]))
        if json_output:
            console.print_json(data=outcome.to_dict())
        else:
            _render_outcome(outcome)
        if dry_run:
            _dry_run_complete(op, f"migration of {tenant.key} planned.")
            return
        if outcome.error is not None:
            _failure(op, outcome.error)
        console.print(f"[green]Tenant {tenant.key} migrated.[/green]")
        op.success(
            "Migration complete.",
            changed=len(outcome.changes) + 1,
            warnings=outcome.record.warnings,
            backups=[outcome.record.backup_archive] if outcome.record.backup_archive else None,
        )


@app.command()
def rollback(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    archive: str | None = typer.Argument(
        None,
        help="Archive name or path (defaults to the latest recorded backup).",
    ),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a tenant from a pre-migration archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback",
        args={"vhost": vhost, "archive": archive, "node": node},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        with _tenant_lock(runtime, op, tenant.key):
            try:
                outcome = runtime.orchestrator.rollback(
                    tenant, target, archive, cancel=CancellationToken()
                )
            except VhostctlError as exc:
                _failure(op, exc)
        for step in outcome.record.steps:
            op.add_step(f"rollback.{step['step']}", status=str(step["status"]))
        if json_output:
            console.print_json(data=outcome.to_dict())
        else:
            _render_outcome(outcome)
        if outcome.error is not None:
            _failure(op, outcome.error)
        console.print(
            f"[green]Tenant {tenant.key} restored from {outcome.record.backup_archive}.[/green]"
        )
        op.success("Rollback complete.", changed=1, warnings=outcome.record.warnings)


@app.command("rollback-points")
def rollback_points(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the backup archives available for a tenant."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback-points",
        args={"vhost": vhost, "node": node, "json": json_output},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        try:
            points = runtime.orchestrator.list_rollback_points(tenant, target)
        except VhostctlError as exc:
            _failure(op, exc)
        if json_output:
            console.print_json(data={"tenant": tenant.key, "archives": [p.to_dict() for p in points]})
            op.success("Reported rollback points as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Created")
        table.add_column("Size")
        if not points:
            table.add_row("(none)", "", "")
        for point in points:
            table.add_row(point.name, point.created_at, str(point.size))
        console.print(table)
        op.success("Reported rollback points.", changed=0)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@app.command()
def show(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    json_output: bool = JSON_OPTION,
    reveal: bool = typer.Option(False, "--reveal", help="Show stored credentials."),
) -> None:
    """Show a tenant record and its desired configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"vhost": vhost, "node": node, "json": json_output, "reveal": reveal},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, _ = _require_tenant(op, identity)
        vconf = runtime.registry.load_vconf(tenant.key)
        shown = vconf if reveal else mask_credentials(vconf)
        if json_output:
            data = tenant.to_dict()
            data["vconf"] = shown
            console.print_json(data=data)
            op.success("Displayed tenant as JSON.", changed=0)
            return
        table = Table(show_header=False, title=tenant.key)
        table.add_row("Status", tenant.migration_status.value)
        if tenant.validation:
            table.add_row("Last validation", str(tenant.validation.get("status", "")))
        if tenant.migrated_at:
            table.add_row("Migrated at", tenant.migrated_at)
        if tenant.migration_backup_path:
            table.add_row("Backup", tenant.migration_backup_path)
        table.add_row("Rollback available", "yes" if tenant.rollback_available else "no")
        table.add_row("Log entries", str(len(tenant.migration_log)))
        for key in sorted(shown):
            table.add_row(key, shown[key])
        console.print(table)
        op.success("Displayed tenant details.", changed=0)


@app.command()
def remove(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip confirmation prompt and proceed non-interactively.",
    ),
) -> None:
    """Forget a tenant record and its desired configuration.

    Nothing on the node is touched.
    """
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"vhost": vhost, "node": node, "site": site, "yes": yes},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, _ = _require_tenant(op, identity)
        if not yes:
            confirmed = typer.confirm(
                f"Remove tenant '{tenant.key}' from the registry?",
                default=False,
            )
            if not confirmed:
                console.print("[yellow]Removal cancelled.[/yellow]")
                op.warning("Removal cancelled by operator.", warnings=["user-cancelled"])
                return
        with _tenant_lock(runtime, op, tenant.key):
            current = runtime.registry.get_tenant(tenant.vnode, tenant.vhost)
            if current is None:
                _command_error(op, f"Tenant {tenant.key} is no longer registered.")
            if current.migration_status is MigrationStatus.IN_PROGRESS:
                _command_error(
                    op,
                    f"Cannot remove {tenant.key}: another operation is in progress.",
                )
            try:
                runtime.registry.remove_tenant(tenant.vnode, tenant.vhost)
            except StateRegistryError as exc:
                _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        op.add_step("registry.remove", status="success", detail=tenant.key)
        console.print(f"[green]Tenant {tenant.key} removed from the registry.[/green]")
        op.success("Tenant removed.", changed=1)


@app.command()
def render(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    out: Path = typer.Option(..., "--out", help="Directory receiving the rendered files."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
) -> None:
    """Render the pool, site and index artifacts of a tenant locally."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"vhost": vhost, "out": str(out)},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, _ = _require_tenant(op, identity)
        vconf = runtime.registry.load_vconf(tenant.key)
        if not vconf:
            _command_error(op, f"No desired configuration stored for {tenant.key}.")
        profile = profile_for(vconf)
        artifacts = (
            (POOL_TEMPLATE, Path(profile.pool_path(vconf)).name, pool_context(vconf)),
            (SITE_TEMPLATE, Path(profile.site_path(vconf)).name, site_context(vconf)),
            (INDEX_TEMPLATE, "index.html", index_context(vconf)),
        )
        changed = 0
        for template, filename, context in artifacts:
            destination = out / template.split("/", 1)[0] / filename
            try:
                written = runtime.templates.render_to_path(template, destination, context)
            except (TemplateRenderError, OSError) as exc:
                _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
            changed += int(written)
            op.add_step(f"render.{template}", status="success" if written else "skipped")
            console.print(f"{'Wrote' if written else 'Unchanged'} {destination}")
        op.success("Rendered tenant artifacts.", changed=changed)


@app.command("export")
def export_tenant(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
) -> None:
    """Write a tenant configuration to the variable tree."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "export",
        args={"vhost": vhost, "node": node},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        identity = _resolve(runtime, op, vhost, node, site)
        tenant, target = _require_tenant(op, identity)
        vconf = runtime.registry.load_vconf(tenant.key)
        if not vconf:
            _command_error(op, f"No desired configuration stored for {tenant.key}.")
        try:
            path = runtime.var_files.write(target.site, target.name, tenant.vhost, vconf)
        except (VarFileError, OSError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        op.add_step("varfile.write", status="success", detail=str(path))
        console.print(f"[green]Exported {tenant.key} to {path}.[/green]")
        op.success("Exported tenant configuration.", changed=1)


@app.command("import")
def import_tenant(
    ctx: typer.Context,
    vhost: str = typer.Argument(..., help="Domain of the tenant."),
    node: str | None = NODE_OPTION,
    site: str | None = SITE_OPTION,
) -> None:
    """Adopt a tenant from the variable tree into the registry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import",
        args={"vhost": vhost, "node": node, "site": site},
        target={"kind": "tenant", "vhost": vhost},
    ) as op:
        entries = runtime.var_files.find(vhost.strip().lower(), vnode=node, vsite=site)
        if not entries:
            _command_error(op, f"No variable file for '{vhost}' found under {runtime.config.var_dir}.")
        if len(entries) > 1:
            _failure(
                op,
                AmbiguousError(
                    f"Domain '{vhost}' has {len(entries)} variable files; pass --node to choose one.",
                    [entry.triple() for entry in entries],
                ),
            )
        entry = entries[0]
        _require_node(runtime, op, entry.vnode)
        key = tenant_key(entry.vnode, entry.vhost)
        with _tenant_lock(runtime, op, key):
            if runtime.registry.get_tenant(entry.vnode, entry.vhost) is not None:
                _command_error(op, f"Tenant {key} is already registered.")
            try:
                variables = runtime.var_files.read(entry.vsite, entry.vnode, entry.vhost)
            except VarFileError as exc:
                _command_error(op, str(exc))
            runtime.registry.save_vconf(key, variables)
            runtime.registry.save_tenant(
                Tenant(
                    vhost=entry.vhost,
                    vnode=entry.vnode,
                    migration_status=MigrationStatus.DISCOVERED,
                    legacy_config=dict(variables),
                )
            )
        op.add_step("registry.tenant", status="success", detail=key)
        console.print(f"[green]Imported {key} ({len(variables)} keys) as discovered.[/green]")
        op.success("Imported tenant.", changed=1)


# ---------------------------------------------------------------------------
# Fleet and configuration
# ---------------------------------------------------------------------------


@fleet_app.command("validate")
def fleet_validate(
    ctx: typer.Context,
    node: str | None = typer.Option(None, "--node", "-n", help="Limit the sweep to one node."),
    workers: int | None = typer.Option(
        None,
        "--workers",
        min=1,
        help="Concurrent validations (defaults to fleet.max_workers).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate every registered tenant with bounded concurrency."""
    runtime = _get_runtime(ctx)
    max_workers = workers or runtime.config.fleet.max_workers
    with runtime.logger.operation(
        "fleet validate",
        args={"node": node, "workers": max_workers},
        target={"kind": "fleet", "node": node},
    ) as op:
        nodes = {item.name: item for item in runtime.registry.read_nodes()}
        tenants = [
            tenant
            for tenant in runtime.registry.read_tenants()
            if (node is None or tenant.vnode == node) and tenant.vnode in nodes
        ]

        def _validate_one(tenant: Tenant) -> ValidationResult:
            result = runtime.validator.validate(tenant, nodes[tenant.vnode])
            with runtime.locks.tenant_lock(tenant.key):
                runtime.validator.write_back(tenant, result)
            return result

        outcomes = sweep(tenants, _validate_one, max_workers=max_workers)
        rows: list[dict[str, object]] = []
        unhealthy = 0
        for outcome in outcomes:
            if outcome.result is not None:
                status = outcome.result.status.value
                detail = f"{len(outcome.result.issues)} issues, {len(outcome.result.warnings)} warnings"
                healthy = outcome.result.status.is_healthy
            else:
                status = "error"
                detail = str(outcome.error)
                healthy = False
            unhealthy += int(not healthy)
            rows.append({"tenant": outcome.item.key, "status": status, "detail": detail})
            op.add_step(f"validate.{outcome.item.key}", status=status)

        if json_output:
            console.print_json(data={"tenants": rows})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Tenant", style="bold")
            table.add_column("Status")
            table.add_column("Detail")
            if not rows:
                table.add_row("(none)", "", "")
            for row in rows:
                table.add_row(str(row["tenant"]), str(row["status"]), str(row["detail"]))
            console.print(table)
        if unhealthy:
            _command_error(
                op,
                f"{unhealthy} of {len(rows)} tenants need attention.",
                rc=int(ExitCode.VALIDATION),
            )
        op.success(f"Validated {len(rows)} tenants.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = "\n".join(f"{k}: {v}" for k, v in value.items())
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
