"""Check implementations for the drift validator.

Each check runs one catalogue script (at most) over the transport and
classifies what it sees. Checks raise :class:`~vhostctl.errors.TransportError`
or :class:`~vhostctl.errors.CommandError` when a probe cannot run; the engine
turns those into findings.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .. import scripts
from ..generator import web_group_for
from ..transport import ExecResult, require_success
from .models import (
    CheckContext,
    CheckDefinition,
    Finding,
    FindingCategory,
    Severity,
    passed,
)

REQUIRED_KEYS = ("UUSER", "U_UID", "U_GID")
LAYOUT_KEYS = ("VHOST", "UPATH", "WPATH", "MPATH")
MIN_RECORD_KEYS = 10
WEB_DIR_MODE = "755"
PRIVATE_DIR_MODE = "750"


@dataclass(slots=True, frozen=True)
class PathOwner:
    """Ownership of a remote path as reported by ``stat``."""

    user: str
    uid: int
    gid: int
    group: str

    @classmethod
    def parse(cls, line: str) -> PathOwner | None:
        """Parse ``user:uid:gid:group``; ``None`` for ``missing``."""
        parts = line.strip().split(":")
        if len(parts) != 4 or not parts[1].isdigit() or not parts[2].isdigit():
            return None
        return cls(user=parts[0], uid=int(parts[1]), gid=int(parts[2]), group=parts[3])


def _probe(ctx: CheckContext, script: str, args: Sequence[str], description: str) -> ExecResult:
    result = ctx.transport.run(ctx.node, script, list(args), privileged=True)
    return require_success(result, description)


def _tabbed(stdout: str) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for line in stdout.splitlines():
        state, sep, value = line.partition("\t")
        if sep:
            rows.append((state.strip(), value.strip()))
    return rows


def stat_owner(ctx: CheckContext, path: str) -> PathOwner | None:
    """Return the owner of *path* on the tenant's node."""
    result = _probe(ctx, scripts.STAT_OWNER, [path], f"stat {path}")
    return PathOwner.parse(result.stdout)


def find_tenant_user(ctx: CheckContext, home: str) -> dict[str, object] | None:
    """Return the ``u<N>`` system user whose home is *home*, if any."""
    result = _probe(ctx, scripts.FIND_TENANT_USER, [home], f"find tenant user for {home}")
    line = result.stdout.strip().splitlines()
    if not line:
        return None
    parts = line[0].split(":")
    if len(parts) != 3 or not parts[1].isdigit() or not parts[2].isdigit():
        return None
    return {"name": parts[0], "uid": int(parts[1]), "gid": int(parts[2])}


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_record(ctx: CheckContext) -> list[Finding]:
    """Verify the stored configuration is usable at all."""
    vconf = ctx.vconf
    if not vconf:
        return [
            Finding(
                "record",
                FindingCategory.RECORD,
                Severity.CRITICAL,
                f"No desired configuration stored for {ctx.tenant.key}.",
            )
        ]
    missing = [key for key in (*REQUIRED_KEYS, *LAYOUT_KEYS) if not vconf.get(key)]
    if missing:
        return [
            Finding(
                "record",
                FindingCategory.RECORD,
                Severity.CRITICAL,
                f"Desired configuration lacks {', '.join(missing)}.",
                data={"missing": missing},
            )
        ]
    if len(vconf) < MIN_RECORD_KEYS:
        return [
            Finding(
                "record",
                FindingCategory.RECORD,
                Severity.WARNING,
                f"Desired configuration holds only {len(vconf)} keys.",
                expected=f">= {MIN_RECORD_KEYS}",
                actual=str(len(vconf)),
            )
        ]
    return [passed("record", FindingCategory.RECORD, f"{len(vconf)} configuration keys stored.")]


def check_footprint(ctx: CheckContext) -> list[Finding]:
    """Detect tenants with no trace at all on the node."""
    user = ctx.vconf["UUSER"]
    upath = ctx.vconf["UPATH"]
    result = _probe(ctx, scripts.FOOTPRINT, [user, upath], "footprint probe")
    flags = dict(line.split("=", 1) for line in result.stdout.split() if "=" in line)
    if flags.get("user") == "no" and flags.get("base") == "no":
        return [
            Finding(
                "footprint",
                FindingCategory.FOOTPRINT,
                Severity.CRITICAL,
                f"No remote footprint: neither user {user} nor {upath} exists.",
            )
        ]
    return [passed("footprint", FindingCategory.FOOTPRINT, "Tenant has a remote footprint.")]


def check_consistency(ctx: CheckContext) -> list[Finding]:
    """Compare the stored identity with the owner of the base directory."""
    vconf = ctx.vconf
    upath = vconf["UPATH"]
    owner = stat_owner(ctx, upath)
    if owner is None:
        return [
            passed(
                "consistency",
                FindingCategory.VCONF_MISMATCH,
                f"Ownership comparison skipped; {upath} is absent.",
            )
        ]
    expected = f"{vconf['UUSER']} ({vconf['U_UID']}:{vconf['U_GID']})"
    actual = f"{owner.user} ({owner.uid}:{owner.gid})"
    if (
        str(owner.uid) == vconf["U_UID"]
        and str(owner.gid) == vconf["U_GID"]
        and owner.user == vconf["UUSER"]
    ):
        return [passed("consistency", FindingCategory.VCONF_MISMATCH, f"{upath} owned by {actual}.")]
    return [
        Finding(
            "consistency",
            FindingCategory.VCONF_MISMATCH,
            Severity.WARNING,
            f"{upath} is owned by {actual} but the record expects {expected}.",
            expected=expected,
            actual=actual,
            data={
                "owner_user": owner.user,
                "owner_uid": owner.uid,
                "owner_gid": owner.gid,
                "tenant_user": find_tenant_user(ctx, upath),
            },
        )
    ]


def check_web_group(ctx: CheckContext) -> list[Finding]:
    """Compare the stored web group with the OS family's web server group."""
    if ctx.profile.family == "generic":
        return []
    expected = ctx.profile.web_group
    actual = ctx.vconf.get("WUGID", "")
    if actual == expected:
        return [passed("web_group", FindingCategory.WEB_GROUP, f"Web group {actual} matches.")]
    return [
        Finding(
            "web_group",
            FindingCategory.WEB_GROUP,
            Severity.WARNING,
            f"Record web group '{actual}' differs from {ctx.profile.family} default '{expected}'.",
            expected=expected,
            actual=actual,
            data={"field": "WUGID"},
        )
    ]


def check_user(ctx: CheckContext) -> list[Finding]:
    """Verify the tenant user exists with the configured UID."""
    user = ctx.vconf["UUSER"]
    uid = ctx.vconf["U_UID"]
    result = _probe(ctx, scripts.USER_UID, [user], f"lookup user {user}")
    actual = result.stdout.strip()
    if actual == "missing" or not actual:
        return [
            Finding(
                "user",
                FindingCategory.USER,
                Severity.ERROR,
                f"User {user} does not exist.",
                expected=uid,
                actual="missing",
                data={"reason": "missing"},
            )
        ]
    if actual != uid:
        return [
            Finding(
                "user",
                FindingCategory.USER,
                Severity.ERROR,
                f"User {user} has UID {actual}, expected {uid}.",
                expected=uid,
                actual=actual,
                data={"reason": "uid_mismatch"},
            )
        ]
    return [passed("user", FindingCategory.USER, f"User {user} exists with UID {uid}.")]


def check_directories(ctx: CheckContext) -> list[Finding]:
    """Verify the base, web and mail trees plus the web-centric subtree."""
    upath, wpath, mpath = ctx.vconf["UPATH"], ctx.vconf["WPATH"], ctx.vconf["MPATH"]
    required = (upath, wpath, mpath)
    optional = (f"{wpath}/app", f"{wpath}/app/public", f"{wpath}/log", f"{wpath}/run")
    result = _probe(ctx, scripts.DIRS_EXIST, [*required, *optional], "directory probe")
    missing = {path for state, path in _tabbed(result.stdout) if state == "missing"}
    findings: list[Finding] = []
    for path in (*required, *optional):
        if path not in missing:
            continue
        findings.append(
            Finding(
                "directories",
                FindingCategory.DIRECTORY,
                Severity.ERROR if path in required else Severity.WARNING,
                f"Directory {path} is missing.",
                expected="present",
                actual="missing",
                data={"path": path},
            )
        )
    if not findings:
        findings.append(
            passed("directories", FindingCategory.DIRECTORY, "Tenant directory layout present.")
        )
    return findings


def check_config_files(ctx: CheckContext) -> list[Finding]:
    """Verify the FPM pool and nginx site files exist."""
    pool = ctx.profile.pool_path(ctx.vconf)
    site = ctx.profile.site_path(ctx.vconf)
    result = _probe(ctx, scripts.FILES_EXIST, [pool, site], "service config probe")
    missing = {path for state, path in _tabbed(result.stdout) if state == "missing"}
    findings: list[Finding] = []
    for artifact, path, severity in (
        ("pool", pool, Severity.ERROR),
        ("site", site, Severity.WARNING),
    ):
        if path in missing:
            findings.append(
                Finding(
                    "config_files",
                    FindingCategory.CONFIG_FILE,
                    severity,
                    f"{artifact.capitalize()} file {path} is missing.",
                    expected="present",
                    actual="missing",
                    data={"artifact": artifact, "path": path},
                )
            )
    if not findings:
        findings.append(
            passed("config_files", FindingCategory.CONFIG_FILE, "Pool and site files present.")
        )
    return findings


def check_permissions(ctx: CheckContext) -> list[Finding]:
    """Verify the web tree belongs to the tenant and the web server group."""
    wpath = ctx.vconf["WPATH"]
    owner = stat_owner(ctx, wpath)
    if owner is None:
        return []
    group = web_group_for(ctx.vconf)
    if str(owner.uid) == ctx.vconf["U_UID"] and group in (owner.group, str(owner.gid)):
        return [passed("permissions", FindingCategory.PERMISSIONS, f"{wpath} ownership correct.")]
    expected = f"{ctx.vconf['U_UID']}:{group}"
    actual = f"{owner.uid}:{owner.group}"
    return [
        Finding(
            "permissions",
            FindingCategory.PERMISSIONS,
            Severity.WARNING,
            f"{wpath} is owned by {actual}, expected {expected}.",
            expected=expected,
            actual=actual,
            data={"path": wpath},
        )
    ]


def check_services(ctx: CheckContext) -> list[Finding]:
    """Verify the web, PHP and mail services are running."""
    services = ctx.profile.services(ctx.vconf)
    result = _probe(ctx, scripts.SERVICE_STATUS, services, "service status probe")
    findings = [
        Finding(
            "services",
            FindingCategory.SERVICE,
            Severity.WARNING,
            f"Service {service} is not active.",
            expected="active",
            actual=state,
            data={"service": service},
        )
        for state, service in _tabbed(result.stdout)
        if state != "active"
    ]
    if not findings:
        findings.append(passed("services", FindingCategory.SERVICE, "All services active."))
    return findings


def check_security(ctx: CheckContext) -> list[Finding]:
    """Verify the octal modes of the web root and its log directory."""
    wpath = ctx.vconf["WPATH"]
    expected = {wpath: WEB_DIR_MODE, f"{wpath}/log": PRIVATE_DIR_MODE}
    result = _probe(ctx, scripts.PATH_MODES, list(expected), "path mode probe")
    findings: list[Finding] = []
    for mode, path in _tabbed(result.stdout):
        want = expected.get(path)
        if want is None or mode == "missing" or mode == want:
            continue
        findings.append(
            Finding(
                "security",
                FindingCategory.SECURITY,
                Severity.WARNING,
                f"{path} has mode {mode}, expected {want}.",
                expected=want,
                actual=mode,
                data={"path": path},
            )
        )
    if not findings:
        findings.append(passed("security", FindingCategory.SECURITY, "Directory modes correct."))
    return findings


def collect_checks() -> tuple[CheckDefinition, ...]:
    """Return the ordered battery of checks."""
    return (
        CheckDefinition("record", FindingCategory.RECORD, check_record, requires_record=False),
        CheckDefinition("footprint", FindingCategory.FOOTPRINT, check_footprint),
        CheckDefinition("consistency", FindingCategory.VCONF_MISMATCH, check_consistency),
        CheckDefinition("web_group", FindingCategory.WEB_GROUP, check_web_group),
        CheckDefinition("user", FindingCategory.USER, check_user),
        CheckDefinition("directories", FindingCategory.DIRECTORY, check_directories),
        CheckDefinition("config_files", FindingCategory.CONFIG_FILE, check_config_files),
        CheckDefinition("permissions", FindingCategory.PERMISSIONS, check_permissions),
        CheckDefinition("services", FindingCategory.SERVICE, check_services),
        CheckDefinition("security", FindingCategory.SECURITY, check_security),
    )


__all__ = [
    "PathOwner",
    "collect_checks",
    "find_tenant_user",
    "stat_owner",
]
