"""Configuration loader for vhostctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/vhostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VHOSTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VHOSTCTL_SSH__COMMAND_TIMEOUT=60
    export VHOSTCTL_FLEET__MAX_WORKERS=2

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load vhostctl configuration. Install with "
        "`pip install vhostctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSHConfig:
    """Remote shell transport settings."""

    ssh_bin: str = "ssh"
    user: str = "root"
    port: int = 22
    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    control_persist: int = 60
    options: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh_bin": self.ssh_bin,
            "user": self.user,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "control_persist": self.control_persist,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class FleetConfig:
    """Fleet sweep concurrency limits."""

    max_workers: int = 4

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_workers": self.max_workers}


@dataclass(frozen=True)
class BackupConfig:
    """Location of pre-migration archives on the managed nodes."""

    root: Path = Path("/srv/backups")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class GeneratorConfig:
    """Site-wide replacements for the generator's static defaults."""

    defaults: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"defaults": dict(self.defaults)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    var_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ssh: SSHConfig
    fleet: FleetConfig
    backups: BackupConfig
    generator: GeneratorConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "var_dir": str(self.var_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ssh": self.ssh.to_dict(),
            "fleet": self.fleet.to_dict(),
            "backups": self.backups.to_dict(),
            "generator": self.generator.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "state_dir": "/var/lib/vhostctl",
    "registry_dir": None,  # derived from state_dir when absent
    "var_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "templates_dir": "/etc/vhostctl/templates",
    "lock_timeout": 30.0,
    "ssh": {
        "ssh_bin": "ssh",
        "user": "root",
        "port": 22,
        "connect_timeout": 10.0,
        "command_timeout": 300.0,
        "control_persist": 60,
        "options": [],
    },
    "fleet": {
        "max_workers": 4,
    },
    "backups": {
        "root": "/srv/backups",
    },
    "generator": {
        "defaults": {},
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "ssh": {
        "ssh_bin",
        "user",
        "port",
        "connect_timeout",
        "command_timeout",
        "control_persist",
        "options",
    },
    "fleet": {"max_workers"},
    "backups": {"root"},
    "generator": {"defaults"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    generator_map = _as_dict(raw.get("generator"), "generator")
    defaults_map = _as_dict(generator_map.get("defaults"), "generator.defaults")
    for key in defaults_map:
        if not key.isupper():
            raise ConfigError(
                f"generator.defaults keys must be upper-case variable names. Got {key!r}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    var_dir_value = raw.get("var_dir")
    var_dir = _to_path(var_dir_value) if var_dir_value else state_dir / "var"

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    default_ssh = SSHConfig()
    options_raw = ssh_mapping.get("options")
    options: tuple[str, ...] = ()
    if options_raw is not None:
        options = tuple(str(item) for item in _as_sequence(options_raw, "ssh.options"))
    port = _expect_int(ssh_mapping.get("port"), "ssh.port", default=default_ssh.port)
    if not 0 < port < 65536:
        raise ConfigError(f"ssh.port must be between 1 and 65535. Got {port}.")
    ssh = SSHConfig(
        ssh_bin=str(ssh_mapping.get("ssh_bin", default_ssh.ssh_bin)),
        user=str(ssh_mapping.get("user", default_ssh.user)),
        port=port,
        connect_timeout=_expect_positive_float(
            ssh_mapping.get("connect_timeout"),
            "ssh.connect_timeout",
            default=default_ssh.connect_timeout,
        ),
        command_timeout=_expect_positive_float(
            ssh_mapping.get("command_timeout"),
            "ssh.command_timeout",
            default=default_ssh.command_timeout,
        ),
        control_persist=_expect_int(
            ssh_mapping.get("control_persist"),
            "ssh.control_persist",
            default=default_ssh.control_persist,
        ),
        options=options,
    )

    fleet_mapping = _as_dict(raw.get("fleet"), "fleet")
    max_workers = _expect_int(fleet_mapping.get("max_workers"), "fleet.max_workers", default=4)
    if max_workers < 1:
        raise ConfigError("fleet.max_workers must be at least 1.")
    fleet = FleetConfig(max_workers=max_workers)

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(root=_to_path(backups_mapping.get("root", "/srv/backups")))

    generator_mapping = _as_dict(raw.get("generator"), "generator")
    defaults_mapping = _as_dict(generator_mapping.get("defaults"), "generator.defaults")
    generator = GeneratorConfig(
        defaults={key: str(value) for key, value in defaults_mapping.items()}
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        var_dir=var_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        ssh=ssh,
        fleet=fleet,
        backups=backups,
        generator=generator,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[:2] == ["generator", "defaults"] and len(path_segments) == 3:
            # Generator variables are upper-case names.
            path_segments[2] = path_segments[2].upper()
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "FleetConfig",
    "GeneratorConfig",
    "SSHConfig",
    "load_config",
]
