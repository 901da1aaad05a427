"""Tests for the desired-configuration generator."""
from __future__ import annotations

import random

import pytest
from fakes import ALPINE_OS_RELEASE, DEBIAN_OS_RELEASE, FakeHost

from vhostctl.generator import (
    CONFIG_KEYS,
    ConfigurationGenerator,
    build_configuration,
    detect_fqdn,
    is_admin_domain,
    next_available_uid,
    os_profile,
    parse_os_release,
    preserve_identity,
)
from vhostctl.models import Node, OsInfo

NODE = Node(name="node-a", site="syd", fqdn="node-a.example.net", ip_address="10.0.0.5")
DEBIAN = OsInfo("debian", "trixie", "deb.debian.org")


@pytest.mark.parametrize(
    ("existing", "expected"),
    [
        ({1001, 1002, 1004, 1005}, 1003),
        (set(), 1001),
        ({500, 999, 1000}, 1001),
        ({1001, 1002, 1003}, 1004),
    ],
)
def test_next_available_uid_fills_gaps(existing: set[int], expected: int) -> None:
    """The lowest free UID above the floor is chosen."""
    assert next_available_uid(existing, 1000) == expected


def test_configuration_has_every_key() -> None:
    """A generated configuration carries exactly the 55 known keys."""
    variables = build_configuration(NODE, "example.com", os_hint=DEBIAN, rng=random.Random(1))

    assert len(CONFIG_KEYS) == 55
    assert set(variables) == CONFIG_KEYS


@pytest.mark.parametrize("ostyp", ["debian", "ubuntu", "alpine", "manjaro", "cachyos", "gentoo"])
def test_key_set_does_not_depend_on_os(ostyp: str) -> None:
    """Every OS family yields the same key set."""
    hint = OsInfo(ostyp, "x", "mirror.example")

    variables = build_configuration(NODE, "example.com", os_hint=hint, rng=random.Random(1))

    assert set(variables) == CONFIG_KEYS


def test_generation_is_deterministic_with_seeded_rng() -> None:
    """Two runs with the same seed and inputs are identical."""
    first = build_configuration(NODE, "example.com", os_hint=DEBIAN, rng=random.Random(42))
    second = build_configuration(NODE, "example.com", os_hint=DEBIAN, rng=random.Random(42))

    assert first == second
    assert len(first["UPASS"]) == 16
    assert first["UPASS"].isalnum()
    assert len(first["WPUSR"]) == 6 and first["WPUSR"].islower()


def test_tenant_identity_and_paths() -> None:
    """Ordinary domains get a u<UID> account and paths under VPATH."""
    variables = build_configuration(
        NODE,
        "Mail.Example.com",
        os_hint=DEBIAN,
        existing_uids=[1001, 1002],
        rng=random.Random(1),
    )

    assert variables["VHOST"] == "mail.example.com"
    assert variables["UUSER"] == "u1003"
    assert variables["U_UID"] == variables["U_GID"] == "1003"
    assert variables["U_SHL"] == "/bin/sh"
    assert variables["HNAME"] == "mail"
    assert variables["HDOMN"] == "example.com"
    assert variables["UPATH"] == "/srv/mail.example.com"
    assert variables["WPATH"] == "/srv/mail.example.com/web"
    assert variables["MPATH"] == "/srv/mail.example.com/msg"
    assert variables["AMAIL"] == "admin@example.com"
    assert variables["DNAME"] == "mail_example_com"
    assert variables["DUSER"] == "u1003"
    assert variables["IP4_0"] == "10.0.0.5"
    assert variables["AHOST"] == "node-a.example.net"


def test_admin_domain_uses_admin_identity() -> None:
    """The node's own FQDN is provisioned as the administrator account."""
    variables = build_configuration(
        NODE, "node-a.example.net", os_hint=DEBIAN, existing_uids=[1001], rng=random.Random(1)
    )

    assert variables["UUSER"] == "sysadm"
    assert variables["U_UID"] == "1000"
    assert variables["U_SHL"] == "/bin/bash"
    assert variables["DNAME"] == "sysadm"


def test_os_table_shapes_paths_and_groups() -> None:
    """Alpine nodes get their PHP layout and web group from the OS table."""
    alpine = build_configuration(
        NODE,
        "example.com",
        os_hint=OsInfo("alpine", "latest-stable", "dl-cdn.alpinelinux.org"),
        rng=random.Random(1),
    )
    debian = build_configuration(NODE, "example.com", os_hint=DEBIAN, rng=random.Random(1))

    assert alpine["WUGID"] == "nginx"
    assert alpine["C_FPM"] == "/etc/php84"
    assert os_profile("alpine").pool_path(alpine) == "/etc/php84/php-fpm.d/example.com.conf"
    assert os_profile("alpine").fpm_service_name(alpine) == "php-fpm84"
    assert debian["WUGID"] == "www-data"
    assert debian["C_FPM"] == "/etc/php/8.2/fpm"
    assert os_profile("debian").site_path(debian) == "/etc/nginx/sites-enabled/example.com"


def test_override_precedence() -> None:
    """Overrides beat static defaults; the OS table and final fields beat overrides."""
    variables = build_configuration(
        NODE,
        "example.com",
        {"VPATH": "/home", "TCITY": "Perth", "V_PHP": "7.4", "UPATH": "/tmp/ignored"},
        DEBIAN,
        defaults={"TCITY": "Brisbane", "DTYPE": "sqlite"},
        rng=random.Random(1),
    )

    assert variables["TCITY"] == "Perth"
    assert variables["UPATH"] == "/home/example.com"
    assert variables["V_PHP"] == "8.2"
    assert variables["SQCMD"] == variables["EXSQL"]


def test_empty_domain_rejected() -> None:
    """A blank domain is a caller error."""
    with pytest.raises(ValueError):
        build_configuration(NODE, "   ")


def test_preserve_identity_keeps_credentials_and_account() -> None:
    """Regeneration keeps the stored account and secrets."""
    existing = build_configuration(
        NODE, "example.com", os_hint=DEBIAN, existing_uids=[1001], rng=random.Random(1)
    )
    regenerated = build_configuration(NODE, "example.com", os_hint=DEBIAN, rng=random.Random(2))

    merged = preserve_identity(existing, regenerated)

    assert merged["UUSER"] == "u1002"
    assert merged["DUSER"] == "u1002"
    assert merged["UPASS"] == existing["UPASS"]
    assert merged["WPUSR"] == existing["WPUSR"]


def test_parse_os_release() -> None:
    """Codenames come from os-release with a per-family fallback."""
    assert parse_os_release(DEBIAN_OS_RELEASE) == DEBIAN
    assert parse_os_release(ALPINE_OS_RELEASE) == OsInfo(
        "alpine", "latest-stable", "dl-cdn.alpinelinux.org"
    )
    assert parse_os_release("NAME=nothing\n") is None


def test_generator_probes_host_uids_and_os() -> None:
    """UIDs in use on the node and in the registry are skipped."""
    host = FakeHost(os_release=ALPINE_OS_RELEASE)
    host.add_user("u1001", 1001, home="/srv/a.example")
    host.add_user("u1002", 1002, home="/srv/b.example")
    generator = ConfigurationGenerator(host, rng=random.Random(3))

    variables = generator.generate(Node(name="node-b"), "c.example", reserved_uids=[1003])

    assert variables["U_UID"] == "1004"
    assert variables["OSTYP"] == "alpine"
    assert variables["WUGID"] == "nginx"
    assert [call[0] for call in host.calls] == ["os-release", "server-fqdn", "list-uids"]


def test_generator_falls_back_when_uid_probe_fails() -> None:
    """A failed UID enumeration allocates the first UID above the floor."""
    host = FakeHost()
    host.add_user("u1001", 1001)
    host.failures["list-uids"] = (1, "getent: permission denied")
    generator = ConfigurationGenerator(host, rng=random.Random(3))

    variables = generator.generate(NODE, "example.com", reserved_uids=[1005])

    assert variables["U_UID"] == "1001"


def test_generator_keeps_existing_identity_without_probing_uids() -> None:
    """An existing configuration keeps its account; no UID probe is needed."""
    host = FakeHost()
    generator = ConfigurationGenerator(host, rng=random.Random(3))
    existing = build_configuration(
        NODE, "example.com", os_hint=DEBIAN, existing_uids=[1001, 1002], rng=random.Random(1)
    )

    variables = generator.generate(
        NODE.with_os(DEBIAN), "example.com", {"TCITY": "Perth"}, existing=existing
    )

    assert variables["UUSER"] == "u1003"
    assert variables["UPASS"] == existing["UPASS"]
    assert variables["TCITY"] == "Perth"
    assert host.calls == []


def test_detected_fqdn_is_the_admin_domain() -> None:
    """A node without a stored FQDN is asked for one before provisioning."""
    host = FakeHost(fqdn="Node-B.Example.NET")
    node = Node(name="node-b")

    fqdn = detect_fqdn(host, node)

    assert fqdn == "node-b.example.net"
    assert not is_admin_domain(node, "node-b.example.net")
    assert is_admin_domain(node.with_fqdn(fqdn), "node-b.example.net")


def test_generator_provisions_detected_fqdn_as_admin() -> None:
    """Generating the node's reported FQDN yields the administrator account."""
    host = FakeHost(fqdn="node-b.example.net")
    generator = ConfigurationGenerator(host, rng=random.Random(3))

    variables = generator.generate(Node(name="node-b"), "node-b.example.net", os_hint=DEBIAN)

    assert variables["UUSER"] == "sysadm"
    assert variables["U_UID"] == "1000"
    assert variables["AHOST"] == "node-b.example.net"
    assert [call[0] for call in host.calls] == ["server-fqdn"]


def test_failed_fqdn_detection_falls_back_to_node_name() -> None:
    """An unanswered FQDN request leaves the node name as its identity."""
    host = FakeHost()
    host.failures["server-fqdn"] = (1, "hostname: command not found")

    assert detect_fqdn(host, Node(name="node-b")) is None
    assert Node(name="node-b").admin_fqdn == "node-b"
