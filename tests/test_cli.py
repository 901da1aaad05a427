"""Tests for the vhostctl command line."""
from __future__ import annotations

import json
import random
from pathlib import Path

import pytest
import yaml
from fakes import FakeHost
from typer.testing import CliRunner

from vhostctl import __version__, cli
from vhostctl.cli import app
from vhostctl.generator import build_configuration, is_admin_domain
from vhostctl.locking import LockManager
from vhostctl.models import MigrationStatus, Node, OsInfo
from vhostctl.state import StateRegistry
from vhostctl.varfiles import VarFileRegistry, parse_var_file

runner = CliRunner()

BACKUP_ROOT = "/var/backups/vhostctl"


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    config: dict[str, object] = {
        "state_dir": str(tmp_path / "state"),
        "var_dir": str(tmp_path / "var"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 2,
        "backups": {"root": BACKUP_ROOT},
    }
    if config_overrides:
        config.update(config_overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"VHOSTCTL_CONFIG_FILE": str(config_file), "COLUMNS": "200"}


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Route every remote call of the CLI to a fake node."""
    fake = FakeHost()
    monkeypatch.setattr(cli, "_build_transport", lambda config: (fake, None))
    return fake


@pytest.fixture
def env(tmp_path: Path, host: FakeHost) -> dict[str, str]:
    """Return an environment with ``node-a`` registered in site ``syd``."""
    environment = _prepare_environment(tmp_path)
    result = runner.invoke(
        app,
        ["node", "add", "node-a", "--site", "syd", "--fqdn", "node-a.example.net"],
        env=environment,
    )
    assert result.exit_code == 0, result.stdout
    return environment


def _invoke(env: dict[str, str], *args: str) -> object:
    return runner.invoke(app, list(args), env=env)


def _seed_legacy(tmp_path: Path, host: FakeHost, vhost: str = "legacy.example.com") -> dict[str, str]:
    node = Node(name="node-a", site="syd", fqdn="node-a.example.net")
    vconf = build_configuration(
        node,
        vhost,
        os_hint=OsInfo("debian", "trixie", "deb.debian.org"),
        rng=random.Random(3),
    )
    VarFileRegistry(tmp_path / "var").write("syd", "node-a", vhost, vconf)
    host.seed_legacy_tenant(vconf)
    return vconf


def test_version_option_outputs_package_version(tmp_path: Path, host: FakeHost) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = runner.invoke(app, ["--version"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path, host: FakeHost) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "Virtual host tenant lifecycle manager" in result.stdout


def test_config_show_json(tmp_path: Path, host: FakeHost) -> None:
    """`config show --json` emits the resolved configuration."""
    result = runner.invoke(
        app,
        ["config", "show", "--json"],
        env=_prepare_environment(tmp_path, config_overrides={"fleet": {"max_workers": 2}}),
    )

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["fleet"] == {"max_workers": 2}
    assert payload["backups"] == {"root": BACKUP_ROOT}


def test_invalid_configuration_exits_with_validation_code(tmp_path: Path, host: FakeHost) -> None:
    """Unknown configuration keys are rejected before any command runs."""
    result = runner.invoke(
        app,
        ["config", "show"],
        env=_prepare_environment(tmp_path, config_overrides={"bogus": 1}),
    )

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout


def test_node_add_list_and_show(env: dict[str, str]) -> None:
    """Registered nodes are listed and shown."""
    listed = _invoke(env, "node", "list", "--json")
    shown = _invoke(env, "node", "show", "node-a", "--json")

    assert listed.exit_code == 0
    assert [item["name"] for item in _extract_json(listed.stdout)["nodes"]] == ["node-a"]
    assert _extract_json(shown.stdout)["site"] == "syd"


def test_node_show_unknown(env: dict[str, str]) -> None:
    """Unknown nodes are a validation error."""
    result = _invoke(env, "node", "show", "node-z")

    assert result.exit_code == 2
    assert "not registered" in result.stdout


def test_node_detect_stores_os(env: dict[str, str]) -> None:
    """Detection stores the node's OS fingerprint."""
    result = _invoke(env, "node", "detect", "node-a")

    assert result.exit_code == 0
    assert "debian trixie" in result.stdout
    node = _extract_json(_invoke(env, "node", "show", "node-a", "--json").stdout)
    assert node["os"] == {"OSTYP": "debian", "OSREL": "trixie", "OSMIR": "deb.debian.org"}


def test_node_detect_without_os_release(env: dict[str, str], host: FakeHost) -> None:
    """An unreadable os-release is an environment error."""
    host.os_release = None

    result = _invoke(env, "node", "detect", "node-a")

    assert result.exit_code == 3


def test_node_detect_stores_reported_fqdn(env: dict[str, str], host: FakeHost) -> None:
    """A node added without an FQDN learns it from the host."""
    host.fqdn = "Node-B.Example.NET"
    assert _invoke(env, "node", "add", "node-b", "--site", "mel").exit_code == 0

    result = _invoke(env, "node", "detect", "node-b")

    assert result.exit_code == 0, result.stdout
    assert "node-b.example.net" in result.stdout
    shown = _extract_json(_invoke(env, "node", "show", "node-b", "--json").stdout)
    assert shown["fqdn"] == "node-b.example.net"
    assert is_admin_domain(Node.from_mapping(shown), "node-b.example.net")


def test_node_detect_keeps_configured_fqdn(env: dict[str, str], host: FakeHost) -> None:
    """An FQDN given at registration is not replaced by the host's answer."""
    result = _invoke(env, "node", "detect", "node-a")

    assert result.exit_code == 0
    assert "server-fqdn" not in [call[0] for call in host.calls]
    shown = _extract_json(_invoke(env, "node", "show", "node-a", "--json").stdout)
    assert shown["fqdn"] == "node-a.example.net"


def test_generate_validate_repair_cycle(env: dict[str, str], host: FakeHost) -> None:
    """A generated tenant is absent, then repaired into a healthy state."""
    generated = _invoke(env, "generate", "mail.example.com", "--node", "node-a")
    assert generated.exit_code == 0, generated.stdout
    assert "created: user u1001 uid 1001" in generated.stdout

    before = _invoke(env, "validate", "mail.example.com")
    assert before.exit_code == 2
    assert "failed" in before.stdout

    planned = _invoke(env, "repair", "mail.example.com", "--dry-run")
    assert planned.exit_code == 0, planned.stdout
    assert "create-user" in planned.stdout
    assert "create-layout" in planned.stdout
    assert "u1001" not in host.users

    repaired = _invoke(env, "repair", "mail.example.com")
    assert repaired.exit_code == 0, repaired.stdout
    assert host.users["u1001"].uid == 1001

    after = _invoke(env, "validate", "mail.example.com", "--json")
    assert after.exit_code == 0, after.stdout
    assert _extract_json(after.stdout)["status"] == "passed"


def test_generate_rejects_malformed_override(env: dict[str, str]) -> None:
    """Overrides must be KEY=value with an upper-case key."""
    result = _invoke(env, "generate", "example.com", "--node", "node-a", "-o", "lower=1")

    assert result.exit_code == 2
    assert "Invalid override" in result.stdout


def test_generate_dry_run_stores_nothing(env: dict[str, str]) -> None:
    """A dry run leaves the registry untouched."""
    result = _invoke(env, "generate", "example.com", "--node", "node-a", "--dry-run")

    assert result.exit_code == 0
    assert "Dry run" in result.stdout
    assert _invoke(env, "show", "example.com").exit_code == 2


def test_generate_requires_node_for_new_tenant(env: dict[str, str]) -> None:
    """A new domain cannot be placed without --node."""
    result = _invoke(env, "generate", "example.com")

    assert result.exit_code == 2
    assert "--node" in result.stdout


def test_show_masks_credentials(env: dict[str, str]) -> None:
    """Credentials are only shown with --reveal."""
    _invoke(env, "generate", "example.com", "--node", "node-a")

    masked = _extract_json(_invoke(env, "show", "example.com", "--json").stdout)
    revealed = _extract_json(_invoke(env, "show", "example.com", "--json", "--reveal").stdout)

    assert masked["vconf"]["UPASS"] == "********"
    assert revealed["vconf"]["UPASS"] != "********"
    assert masked["migration_status"] == "native"


def test_remove_forgets_tenant_record(tmp_path: Path, env: dict[str, str]) -> None:
    """Removal drops the record and its stored configuration."""
    _invoke(env, "generate", "example.com", "--node", "node-a")
    vconf_file = tmp_path / "state" / "registry" / "vconfs" / "node-a" / "example.com.yml"
    assert vconf_file.is_file()

    result = _invoke(env, "remove", "example.com", "--yes")

    assert result.exit_code == 0, result.stdout
    assert "removed from the registry" in result.stdout
    assert not vconf_file.exists()
    assert _invoke(env, "show", "example.com").exit_code == 2


def test_remove_asks_for_confirmation(env: dict[str, str]) -> None:
    """Declining the prompt keeps the tenant."""
    _invoke(env, "generate", "example.com", "--node", "node-a")

    result = runner.invoke(app, ["remove", "example.com"], env=env, input="n\n")

    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert _invoke(env, "show", "example.com").exit_code == 0


def test_remove_refuses_tenant_in_progress(tmp_path: Path, env: dict[str, str]) -> None:
    """A tenant in the middle of a migration cannot be removed."""
    _invoke(env, "generate", "example.com", "--node", "node-a")
    StateRegistry(tmp_path / "state" / "registry").update_tenant(
        "node-a", "example.com", {"migration_status": MigrationStatus.IN_PROGRESS}
    )

    result = _invoke(env, "remove", "example.com", "--yes")

    assert result.exit_code == 2
    assert "in progress" in result.stdout
    assert _invoke(env, "show", "example.com").exit_code == 0


def test_remove_waits_for_tenant_lock(tmp_path: Path, env: dict[str, str]) -> None:
    """Removal does not proceed while another command holds the tenant."""
    _invoke(env, "generate", "example.com", "--node", "node-a")

    with LockManager(tmp_path / "run").tenant_lock("node-a/example.com"):
        result = _invoke(env, "--lock-timeout", "0.2", "remove", "example.com", "--yes")

    assert result.exit_code == 3
    assert _invoke(env, "show", "example.com").exit_code == 0


def test_ambiguous_domain_lists_candidates(env: dict[str, str]) -> None:
    """A domain on two nodes needs a hint."""
    assert _invoke(env, "node", "add", "node-b", "--site", "mel").exit_code == 0
    _invoke(env, "generate", "example.com", "--node", "node-a")
    _invoke(env, "generate", "example.com", "--node", "node-b")

    ambiguous = _invoke(env, "show", "example.com")
    hinted = _invoke(env, "show", "example.com", "--node", "node-b", "--json")

    assert ambiguous.exit_code == 2
    assert "Candidates" in ambiguous.stdout
    assert "node-b" in ambiguous.stdout
    assert hinted.exit_code == 0
    assert _extract_json(hinted.stdout)["vnode"] == "node-b"


def test_provision_converges_node(env: dict[str, str], host: FakeHost) -> None:
    """Provisioning pushes the tenant and validation passes."""
    result = _invoke(env, "provision", "example.com", "--node", "node-a")

    assert result.exit_code == 0, result.stdout
    assert "provisioned" in result.stdout
    assert _invoke(env, "validate", "example.com").exit_code == 0


def test_provision_failure_exit_code(env: dict[str, str], host: FakeHost) -> None:
    """A failed remote action is a provider error."""
    host.broken_services.add("nginx")

    result = _invoke(env, "provision", "example.com", "--node", "node-a")

    assert result.exit_code == 4


def test_legacy_import_migrate_and_rollback(tmp_path: Path, env: dict[str, str], host: FakeHost) -> None:
    """A legacy tenant is imported, migrated and rolled back."""
    vconf = _seed_legacy(tmp_path, host)

    unimported = _invoke(env, "validate", "legacy.example.com")
    assert unimported.exit_code == 2
    assert "vhostctl import" in unimported.stdout

    imported = _invoke(env, "import", "legacy.example.com")
    assert imported.exit_code == 0, imported.stdout
    assert "as discovered" in imported.stdout

    planned = _invoke(env, "migrate", "legacy.example.com", "--dry-run")
    assert planned.exit_code == 0
    assert "Dry run" in planned.stdout
    assert not host.archives

    migrated = _invoke(env, "migrate", "legacy.example.com")
    assert migrated.exit_code == 0, migrated.stdout
    assert host.is_file(f"{vconf['WPATH']}/app/public/index.html")

    again = _invoke(env, "migrate", "legacy.example.com")
    assert again.exit_code == 2
    assert "already migrated" in again.stdout

    points = _extract_json(_invoke(env, "rollback-points", "legacy.example.com", "--json").stdout)
    assert len(points["archives"]) == 1
    assert points["archives"][0]["path"].startswith(f"{BACKUP_ROOT}/legacy.example.com/")

    restored = _invoke(env, "rollback", "legacy.example.com")
    assert restored.exit_code == 0, restored.stdout
    assert host.is_file(f"{vconf['WPATH']}/index.html")

    record = _extract_json(_invoke(env, "show", "legacy.example.com", "--json").stdout)
    assert record["migration_status"] == "validated"
    assert [entry["kind"] for entry in record["migration_log"]] == ["migration", "rollback"]


def test_import_twice_is_rejected(tmp_path: Path, env: dict[str, str], host: FakeHost) -> None:
    """An imported tenant cannot be imported again."""
    _seed_legacy(tmp_path, host)
    _invoke(env, "import", "legacy.example.com")

    result = _invoke(env, "import", "legacy.example.com")

    assert result.exit_code == 2
    assert "already registered" in result.stdout


def test_migrate_unreachable_node(tmp_path: Path, env: dict[str, str], host: FakeHost) -> None:
    """Losing the node mid-migration is an environment error."""
    _seed_legacy(tmp_path, host)
    _invoke(env, "import", "legacy.example.com")
    host.unreachable = True

    result = _invoke(env, "migrate", "legacy.example.com")

    assert result.exit_code == 3
    record = _extract_json(_invoke(env, "show", "legacy.example.com", "--json").stdout)
    assert record["migration_status"] == "failed"


def test_render_writes_artifacts(tmp_path: Path, env: dict[str, str]) -> None:
    """Rendering writes the pool, site and index files locally."""
    _invoke(env, "generate", "example.com", "--node", "node-a")
    out = tmp_path / "out"

    result = _invoke(env, "render", "example.com", "--out", str(out))

    assert result.exit_code == 0, result.stdout
    assert (out / "fpm" / "example.com.conf").read_text(encoding="utf-8").startswith("[example.com]")
    assert (out / "nginx" / "example.com").is_file()
    assert "example.com" in (out / "web" / "index.html").read_text(encoding="utf-8")


def test_export_writes_var_file(tmp_path: Path, env: dict[str, str]) -> None:
    """Export writes the tenant to the variable tree."""
    _invoke(env, "generate", "example.com", "--node", "node-a")

    result = _invoke(env, "export", "example.com")

    assert result.exit_code == 0, result.stdout
    path = tmp_path / "var" / "syd" / "node-a" / "example.com"
    assert parse_var_file(path.read_text(encoding="utf-8"))["UUSER"] == "u1001"


def test_fleet_validate_reports_each_tenant(env: dict[str, str]) -> None:
    """The sweep covers every tenant and fails when one is unhealthy."""
    assert _invoke(env, "provision", "healthy.example.com", "--node", "node-a").exit_code == 0
    assert _invoke(env, "generate", "absent.example.com", "--node", "node-a").exit_code == 0

    result = _invoke(env, "fleet", "validate", "--workers", "1", "--json")

    assert result.exit_code == 2
    rows = {row["tenant"]: row["status"] for row in _extract_json(result.stdout)["tenants"]}
    assert rows == {
        "node-a/healthy.example.com": "passed",
        "node-a/absent.example.com": "failed",
    }


def test_operations_are_logged(tmp_path: Path, env: dict[str, str]) -> None:
    """Every command appends one record to the operations log."""
    _invoke(env, "node", "show", "node-z")

    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    last = json.loads(lines[-1])
    assert json.loads(lines[0])["command"] == "node add"
    assert last["command"] == "node show"
    assert last["result"]["status"] == "error"
    assert last["result"]["rc"] == 2


def test_validate_waits_for_tenant_lock(tmp_path: Path, env: dict[str, str]) -> None:
    """Validation does not write its snapshot while another command holds the tenant."""
    _invoke(env, "generate", "example.com", "--node", "node-a")
    locks = LockManager(tmp_path / "run")

    with locks.tenant_lock("node-a/example.com"):
        result = _invoke(env, "--lock-timeout", "0.2", "validate", "example.com")

    assert result.exit_code == 3
    assert "Timed out" in result.stdout
    record = _extract_json(_invoke(env, "show", "example.com", "--json").stdout)
    assert record["validation"] is None


def test_fleet_validate_reports_locked_tenant(tmp_path: Path, env: dict[str, str]) -> None:
    """A tenant held by another command is reported instead of overwritten."""
    _invoke(env, "generate", "example.com", "--node", "node-a")
    locks = LockManager(tmp_path / "run")

    with locks.tenant_lock("node-a/example.com"):
        result = _invoke(env, "--lock-timeout", "0.2", "fleet", "validate", "--json")

    assert result.exit_code == 2
    rows = _extract_json(result.stdout)["tenants"]
    assert [row["status"] for row in rows] == ["error"]
    record = _extract_json(_invoke(env, "show", "example.com", "--json").stdout)
    assert record["validation"] is None
