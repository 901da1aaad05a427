"""Desired-configuration generator.

:func:`build_configuration` is a pure function of the node, the domain, the
caller's overrides, an optional detected OS and the set of UIDs already in use.
It evaluates in a fixed order where later stages overwrite earlier ones:

1. static defaults
2. detected OS (``OSTYP``/``OSREL``/``OSMIR``)
3. explicit overrides
4. dynamic identity fields and generated credentials
5. the OS-family table
6. final fields composed from everything above

:class:`ConfigurationGenerator` wraps the pure function with the remote probes
(OS detection, UID enumeration) it needs.
"""
from __future__ import annotations

import logging
import random
import re
import secrets
import string
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .models import Node, OsInfo
from .scripts import LIST_UIDS, OS_RELEASE, SERVER_FQDN
from .transport import Transport
from .varfiles import VarFileError, parse_var_file

logger = logging.getLogger(__name__)

STATIC_DEFAULTS: Mapping[str, str] = MappingProxyType(
    {
        "ADMIN": "sysadm",
        "AMAIL": "",
        "ANAME": "System Administrator",
        "A_GID": "1000",
        "A_UID": "1000",
        "BPATH": "/home/backups",
        "CIMAP": "/etc/dovecot",
        "CSMTP": "/etc/postfix",
        "C_DNS": "/etc/powerdns",
        "C_FPM": "",
        "C_SQL": "/etc/mysql",
        "C_SSL": "/etc/ssl",
        "C_WEB": "/etc/nginx",
        "DBMYS": "/var/lib/mysql",
        "DBSQL": "/var/lib/sqlite",
        "DHOST": "localhost",
        "DPORT": "3306",
        "DPVDR": "homelab",
        "DTYPE": "mysql",
        "OSMIR": "deb.debian.org",
        "OSREL": "trixie",
        "OSTYP": "debian",
        "TAREA": "Australia",
        "TCITY": "Sydney",
        "VPATH": "/srv",
        "VUSER": "admin",
        "V_PHP": "8.3",
        "WUGID": "www-data",
    }
)

DYNAMIC_KEYS = (
    "VHOST",
    "VNODE",
    "UUSER",
    "U_UID",
    "U_GID",
    "U_SHL",
    "HNAME",
    "HDOMN",
    "AHOST",
    "MHOST",
    "IP4_0",
    "APASS",
    "DPASS",
    "EPASS",
    "UPASS",
    "WPASS",
    "WPUSR",
)

FINAL_KEYS = (
    "UPATH",
    "WPATH",
    "MPATH",
    "DPATH",
    "DNAME",
    "DUSER",
    "EXMYS",
    "EXSQL",
    "SQCMD",
    "SQDNS",
)

CONFIG_KEYS: frozenset[str] = frozenset((*STATIC_DEFAULTS, *DYNAMIC_KEYS, *FINAL_KEYS))

CREDENTIAL_KEYS = ("APASS", "DPASS", "EPASS", "UPASS", "WPASS", "WPUSR")
IDENTITY_KEYS = ("UUSER", "U_UID", "U_GID", "U_SHL")
UID_CEILING = 60000

_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass(slots=True, frozen=True)
class OsProfile:
    """Everything that differs between OS families."""

    family: str
    overrides: Mapping[str, str]
    fpm_dir: str = "/etc/php/{V_PHP}/fpm"
    pool_subdir: str = "pool.d"
    fpm_service: str = "php{V_PHP}-fpm"
    default_release: str = "unknown"

    def fpm_config_dir(self, variables: Mapping[str, str]) -> str:
        """Return the PHP-FPM configuration directory for *variables*."""
        return self.fpm_dir.format(V_PHP=variables.get("V_PHP", ""))

    def pool_path(self, variables: Mapping[str, str]) -> str:
        """Return the remote path of the tenant's FPM pool file."""
        return f"{variables['C_FPM']}/{self.pool_subdir}/{variables['VHOST']}.conf"

    def site_path(self, variables: Mapping[str, str]) -> str:
        """Return the remote path of the tenant's nginx site file."""
        return f"{variables['C_WEB']}/sites-enabled/{variables['VHOST']}"

    def fpm_service_name(self, variables: Mapping[str, str]) -> str:
        """Return the init-system name of the PHP-FPM service."""
        return self.fpm_service.format(V_PHP=variables.get("V_PHP", ""))

    def services(self, variables: Mapping[str, str]) -> tuple[str, ...]:
        """Return the services a tenant depends on, web stack first."""
        return ("nginx", self.fpm_service_name(variables), "postfix", "dovecot")

    def web_services(self, variables: Mapping[str, str]) -> tuple[str, ...]:
        """Return the services reloaded after web configuration changes."""
        return ("nginx", self.fpm_service_name(variables))

    @property
    def web_group(self) -> str:
        """Return the group the web server runs as."""
        return self.overrides.get("WUGID", STATIC_DEFAULTS["WUGID"])


_ALPINE = OsProfile(
    family="alpine",
    overrides=MappingProxyType(
        {
            "V_PHP": "84",
            "C_DNS": "/etc/pdns",
            "C_SQL": "/etc/my.cnf.d",
            "OSMIR": "dl-cdn.alpinelinux.org",
            "WUGID": "nginx",
        }
    ),
    fpm_dir="/etc/php{V_PHP}",
    pool_subdir="php-fpm.d",
    fpm_service="php-fpm{V_PHP}",
    default_release="latest-stable",
)
_DEBIAN = OsProfile(
    family="debian",
    overrides=MappingProxyType({"V_PHP": "8.2", "OSMIR": "deb.debian.org"}),
    default_release="trixie",
)
_UBUNTU = OsProfile(
    family="ubuntu",
    overrides=MappingProxyType({"V_PHP": "8.3", "OSMIR": "archive.ubuntu.com"}),
    default_release="noble",
)
_MANJARO = OsProfile(
    family="manjaro",
    overrides=MappingProxyType(
        {
            "V_PHP": "8.4",
            "C_SQL": "/etc/my.cnf.d",
            "OSMIR": "manjaro.moson.eu",
            "WUGID": "http",
        }
    ),
    fpm_dir="/etc/php",
    pool_subdir="php-fpm.d",
    fpm_service="php-fpm",
    default_release="stable",
)
_ARCH = OsProfile(
    family="arch",
    overrides=MappingProxyType(
        {
            "V_PHP": "8.4",
            "C_SQL": "/etc/my.cnf.d",
            "OSMIR": "archlinux.cachyos.org",
            "WUGID": "http",
        }
    ),
    fpm_dir="/etc/php",
    pool_subdir="php-fpm.d",
    fpm_service="php-fpm",
    default_release="n/a",
)
_GENERIC = OsProfile(family="generic", overrides=MappingProxyType({}))

OS_PROFILES: Mapping[str, OsProfile] = MappingProxyType(
    {
        "alpine": _ALPINE,
        "linux-musl": _ALPINE,
        "debian": _DEBIAN,
        "ubuntu": _UBUNTU,
        "manjaro": _MANJARO,
        "arch": _ARCH,
        "cachyos": _ARCH,
    }
)


def os_profile(ostyp: str | None) -> OsProfile:
    """Return the profile for *ostyp*, falling back to a generic one."""
    return OS_PROFILES.get((ostyp or "").strip().lower(), _GENERIC)


def profile_for(variables: Mapping[str, str]) -> OsProfile:
    """Return the OS profile matching a stored configuration."""
    return os_profile(variables.get("OSTYP"))


def web_group_for(variables: Mapping[str, str]) -> str:
    """Return the web server group a stored configuration expects on its node."""
    return variables.get("WUGID") or profile_for(variables).web_group


def next_available_uid(existing: Iterable[int], floor: int = 1000) -> int:
    """Return the lowest UID above *floor* that is not in *existing*."""
    taken = {uid for uid in existing if uid > floor}
    candidate = floor + 1
    while candidate in taken:
        candidate += 1
    return candidate


def is_admin_domain(node: Node, domain: str) -> bool:
    """Return ``True`` when *domain* is the node's own administrative identity."""
    return domain.strip().lower() == node.admin_fqdn.lower()


def generate_password(rng: random.Random | None = None, length: int = 16) -> str:
    """Return a random alphanumeric credential."""
    chooser = rng or secrets.SystemRandom()
    return "".join(chooser.choice(_PASSWORD_ALPHABET) for _ in range(length))


def generate_username(rng: random.Random | None = None, length: int = 6) -> str:
    """Return a random lowercase user name."""
    chooser = rng or secrets.SystemRandom()
    return "".join(chooser.choice(string.ascii_lowercase) for _ in range(length))


def build_configuration(
    node: Node,
    domain: str,
    overrides: Mapping[str, str] | None = None,
    os_hint: OsInfo | None = None,
    *,
    existing_uids: Iterable[int] = (),
    defaults: Mapping[str, str] | None = None,
    rng: random.Random | None = None,
) -> dict[str, str]:
    """Return the complete desired configuration for *domain* on *node*.

    ``rng`` defaults to :class:`secrets.SystemRandom`; tests pass a seeded
    :class:`random.Random` to make credentials reproducible.
    """
    domain = domain.strip().lower()
    if not domain:
        raise ValueError("domain must not be empty")

    variables: dict[str, str] = dict(STATIC_DEFAULTS)
    if defaults:
        variables.update({key: str(value) for key, value in defaults.items()})

    if os_hint is not None:
        variables.update(os_hint.to_dict())

    if overrides:
        variables.update({key: str(value) for key, value in overrides.items()})

    _apply_dynamic(variables, node, domain, existing_uids, rng)

    profile = os_profile(variables["OSTYP"])
    variables.update(profile.overrides)

    _apply_final(variables, profile)
    return variables


def _apply_dynamic(
    variables: dict[str, str],
    node: Node,
    domain: str,
    existing_uids: Iterable[int],
    rng: random.Random | None,
) -> None:
    admin = is_admin_domain(node, domain)
    if admin:
        user = variables["ADMIN"]
        uid = int(variables["A_UID"])
    else:
        uid = next_available_uid(existing_uids, int(variables["A_UID"]))
        user = f"u{uid}"

    hostname, _, host_domain = domain.partition(".")
    variables.update(
        {
            "VHOST": domain,
            "VNODE": node.name,
            "UUSER": user,
            "U_UID": str(uid),
            "U_GID": str(uid),
            "U_SHL": "/bin/bash" if admin else "/bin/sh",
            "HNAME": hostname,
            "HDOMN": host_domain or domain,
            "AHOST": node.admin_fqdn,
            "MHOST": domain,
            "IP4_0": node.ip_address or "127.0.0.1",
        }
    )
    for key in ("APASS", "DPASS", "EPASS", "UPASS", "WPASS"):
        variables[key] = generate_password(rng)
    variables["WPUSR"] = generate_username(rng)


def _apply_final(variables: dict[str, str], profile: OsProfile) -> None:
    domain = variables["VHOST"]
    admin_user = variables["ADMIN"]
    upath = f"{variables['VPATH']}/{domain}"
    mail_domain = domain[len("mail."):] if domain.startswith("mail.") else domain

    variables["UPATH"] = upath
    variables["WPATH"] = f"{upath}/web"
    variables["MPATH"] = f"{upath}/msg"
    variables["DPATH"] = f"{variables['DBSQL']}/{admin_user}/{admin_user}.db"
    variables["DNAME"] = (
        admin_user if variables["UUSER"] == admin_user else _NON_ALNUM.sub("_", domain)
    )
    variables["DUSER"] = variables["UUSER"]
    variables["AMAIL"] = f"{variables['VUSER']}@{mail_domain}"
    variables["EXMYS"] = f"mariadb -BN {admin_user}"
    variables["EXSQL"] = f"sqlite3 {variables['DPATH']}"
    variables["SQCMD"] = variables["EXMYS"] if variables["DTYPE"] == "mysql" else variables["EXSQL"]
    variables["SQDNS"] = (
        "mariadb -BN pdns"
        if variables["DTYPE"] == "mysql"
        else f"sqlite3 {variables['DBSQL']}/{admin_user}/pdns.db"
    )
    variables["C_FPM"] = profile.fpm_config_dir(variables)


def preserve_credentials(existing: Mapping[str, str], regenerated: Mapping[str, str]) -> dict[str, str]:
    """Return *regenerated* with credentials carried over from *existing*."""
    merged = dict(regenerated)
    for key in CREDENTIAL_KEYS:
        value = existing.get(key)
        if value:
            merged[key] = value
    return merged


def preserve_identity(existing: Mapping[str, str], regenerated: Mapping[str, str]) -> dict[str, str]:
    """Return *regenerated* keeping the stored user identity and credentials."""
    merged = preserve_credentials(existing, regenerated)
    for key in IDENTITY_KEYS:
        value = existing.get(key)
        if value:
            merged[key] = value
    merged["DUSER"] = merged["UUSER"]
    return merged


def parse_os_release(text: str) -> OsInfo | None:
    """Return the OS fingerprint described by ``/etc/os-release`` content."""
    try:
        release = parse_var_file(text)
    except VarFileError:
        logger.warning("Unparseable /etc/os-release content")
        return None
    ostyp = release.get("ID", "").strip().lower()
    if not ostyp:
        return None
    profile = os_profile(ostyp)
    osrel = release.get("VERSION_CODENAME", "").strip() or profile.default_release
    osmir = profile.overrides.get("OSMIR", STATIC_DEFAULTS["OSMIR"])
    return OsInfo(ostyp=ostyp, osrel=osrel, osmir=osmir)


def detect_os(transport: Transport, node: Node) -> OsInfo | None:
    """Probe *node* for its OS fingerprint; ``None`` when it cannot be read."""
    result = transport.run(node, OS_RELEASE)
    if not result.success:
        logger.warning(
            "OS detection on %s failed (exit %s): %s",
            node.name,
            result.exit_code,
            result.error or result.output,
        )
        return None
    return parse_os_release(result.stdout)


def detect_fqdn(transport: Transport, node: Node) -> str | None:
    """Return the FQDN *node* reports for itself; ``None`` when it cannot be read."""
    result = transport.run(node, SERVER_FQDN)
    fqdn = result.stdout.strip().lower() if result.success else ""
    if not fqdn:
        logger.warning(
            "FQDN detection on %s failed (exit %s): %s",
            node.name,
            result.exit_code,
            result.error or result.output,
        )
        return None
    return fqdn


def probe_existing_uids(transport: Transport, node: Node, floor: int = 1000) -> list[int] | None:
    """Return UIDs in ``(floor, 60000)`` on *node*, or ``None`` when the probe fails."""
    result = transport.run(node, LIST_UIDS, [str(floor)])
    if not result.success:
        logger.warning(
            "UID enumeration on %s failed (exit %s): %s",
            node.name,
            result.exit_code,
            result.error or result.output,
        )
        return None
    uids: list[int] = []
    for line in result.stdout.splitlines():
        token = line.strip()
        if token.isdigit() and floor < int(token) < UID_CEILING:
            uids.append(int(token))
    return uids


@dataclass(slots=True)
class ConfigurationGenerator:
    """Generate desired configurations using live node probes."""

    transport: Transport
    defaults: Mapping[str, str] = field(default_factory=dict)
    rng: random.Random | None = None

    def detect_os(self, node: Node) -> OsInfo | None:
        """Return the OS fingerprint of *node*."""
        return detect_os(self.transport, node)

    def detect_fqdn(self, node: Node) -> str | None:
        """Return the FQDN *node* reports for itself."""
        return detect_fqdn(self.transport, node)

    def used_uids(self, node: Node, reserved: Iterable[int] = ()) -> set[int]:
        """Return the UIDs unavailable on *node*.

        When the remote enumeration fails the admin UID floor is used, so the
        next allocation is ``A_UID + 1``.
        """
        floor = int(self.defaults.get("A_UID", STATIC_DEFAULTS["A_UID"]))
        remote = probe_existing_uids(self.transport, node, floor)
        if remote is None:
            logger.warning(
                "Falling back to UID %d for %s; existing UIDs could not be listed",
                floor + 1,
                node.name,
            )
            return set()
        return set(remote) | set(reserved)

    def generate(
        self,
        node: Node,
        domain: str,
        overrides: Mapping[str, str] | None = None,
        *,
        os_hint: OsInfo | None = None,
        existing: Mapping[str, str] | None = None,
        reserved_uids: Iterable[int] = (),
        detect: bool = True,
    ) -> dict[str, str]:
        """Return the desired configuration for *domain* on *node*.

        *existing* is a previously stored configuration; its identity and
        credentials survive regeneration. *reserved_uids* are UIDs held by
        other registered tenants that may not exist on the host yet.
        """
        hint = os_hint or node.os
        if hint is None and detect:
            hint = self.detect_os(node)
        if node.fqdn is None and detect:
            fqdn = self.detect_fqdn(node)
            if fqdn:
                node = node.with_fqdn(fqdn)

        uids: Iterable[int] = ()
        if not (existing and existing.get("U_UID")) and not is_admin_domain(node, domain):
            uids = self.used_uids(node, reserved_uids)

        variables = build_configuration(
            node,
            domain,
            overrides,
            hint,
            existing_uids=uids,
            defaults=self.defaults,
            rng=self.rng,
        )
        if existing:
            variables = preserve_identity(existing, variables)
        return variables


__all__ = [
    "CONFIG_KEYS",
    "CREDENTIAL_KEYS",
    "ConfigurationGenerator",
    "OS_PROFILES",
    "OsProfile",
    "STATIC_DEFAULTS",
    "build_configuration",
    "detect_fqdn",
    "detect_os",
    "is_admin_domain",
    "next_available_uid",
    "os_profile",
    "parse_os_release",
    "preserve_credentials",
    "preserve_identity",
    "probe_existing_uids",
    "profile_for",
    "web_group_for",
]
