"""Filesystem-backed secondary tenant registry.

Legacy deployments keep one shell-style variable file per tenant at
``<var_dir>/<vsite>/<vnode>/<vhost>``, each line holding ``KEY='value'``. The
identity resolver falls back to scanning this tree when the primary registry
has no match, and ``vhostctl import``/``export`` move configurations between
the two stores.
"""
from __future__ import annotations

import os
import re
import shlex
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

_VAR_NAME = re.compile(r"^[A-Z][A-Z0-9_]*$")


class VarFileError(RuntimeError):
    """Raised when a variable file cannot be parsed or written."""


@dataclass(slots=True, frozen=True)
class VarFileEntry:
    """Location of one tenant variable file."""

    vsite: str
    vnode: str
    vhost: str
    path: Path

    def triple(self) -> dict[str, str]:
        """Return the identity triple for this entry."""
        return {"vsite": self.vsite, "vnode": self.vnode, "vhost": self.vhost}


@dataclass(slots=True)
class VarFileScan:
    """Aggregated result of walking the variable tree."""

    entries: list[VarFileEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_var_file(text: str) -> dict[str, str]:
    """Parse ``KEY='value'`` assignments from *text*."""
    variables: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        try:
            tokens = shlex.split(stripped, comments=True)
        except ValueError as exc:
            raise VarFileError(f"line {lineno}: {exc}") from exc
        for token in tokens:
            name, sep, value = token.partition("=")
            if not sep or not _VAR_NAME.match(name):
                raise VarFileError(f"line {lineno}: expected KEY=value, got {token!r}")
            variables[name] = value
    return variables


def format_var_file(variables: Mapping[str, str]) -> str:
    """Render *variables* as sorted ``KEY='value'`` lines."""
    lines = [f"{name}={shlex.quote(str(value))}" for name, value in sorted(variables.items())]
    return "\n".join(lines) + "\n"


class VarFileRegistry:
    """Read and write tenant variable files below ``root``."""

    def __init__(self, root: Path) -> None:
        """Store the registry root."""
        self.root = Path(root)

    def path_for(self, vsite: str, vnode: str, vhost: str) -> Path:
        """Return the variable file path for a tenant."""
        for part in (vsite, vnode, vhost):
            if not part or "/" in part or part.startswith("."):
                raise VarFileError(f"Invalid path component '{part}'.")
        return self.root / vsite / vnode / vhost

    def scan(self) -> VarFileScan:
        """Walk ``root`` and return every tenant file found."""
        report = VarFileScan()
        if not self.root.is_dir():
            report.warnings.append(f"Var directory {self.root} does not exist.")
            return report
        for site_dir in sorted(path for path in self.root.iterdir() if path.is_dir()):
            for node_dir in sorted(path for path in site_dir.iterdir() if path.is_dir()):
                for candidate in sorted(node_dir.iterdir()):
                    if not candidate.is_file() or candidate.name.startswith("."):
                        continue
                    if candidate.suffix == ".conf":
                        report.warnings.append(f"Skipping {candidate}: not a tenant file.")
                        continue
                    report.entries.append(
                        VarFileEntry(
                            vsite=site_dir.name,
                            vnode=node_dir.name,
                            vhost=candidate.name,
                            path=candidate,
                        )
                    )
        return report

    def find(
        self,
        vhost: str,
        *,
        vnode: str | None = None,
        vsite: str | None = None,
    ) -> list[VarFileEntry]:
        """Return entries for *vhost* matching the optional hints."""
        return [
            entry
            for entry in self.scan().entries
            if entry.vhost == vhost
            and (vnode is None or entry.vnode == vnode)
            and (vsite is None or entry.vsite == vsite)
        ]

    def read(self, vsite: str, vnode: str, vhost: str) -> dict[str, str]:
        """Return the variables stored for a tenant."""
        path = self.path_for(vsite, vnode, vhost)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise VarFileError(f"Variable file {path} does not exist.") from exc
        try:
            return parse_var_file(text)
        except VarFileError as exc:
            raise VarFileError(f"{path}: {exc}") from exc

    def write(self, vsite: str, vnode: str, vhost: str, variables: Mapping[str, str]) -> Path:
        """Atomically write *variables* for a tenant and return the path."""
        path = self.path_for(vsite, vnode, vhost)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(format_var_file(variables))
            os.replace(tmp_path, path)
            os.chmod(path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)
        return path


__all__ = [
    "VarFileEntry",
    "VarFileError",
    "VarFileRegistry",
    "VarFileScan",
    "format_var_file",
    "parse_var_file",
]
