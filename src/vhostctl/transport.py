"""Remote execution transport.

Scripts are opaque POSIX shell payloads piped over OpenSSH to ``bash -s``
on the node. Positional arguments are shell-quoted, a fail-fast preamble is
injected unless the script already enables ``errexit``, and privileged
execution is a flag that prefixes ``sudo -n``. A transport-level failure
(connection refused, timeout, missing ssh binary) is reported with exit code
255 and a populated ``error``; a remote command returning non-zero keeps its
own exit code.

Connection reuse goes through an explicit :class:`ConnectionPool` holding
OpenSSH ControlMaster sockets keyed by node name. The pool is closed by its
owner; nothing relies on process teardown.
"""
from __future__ import annotations

import logging
import re
import shlex
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Protocol

from .errors import TRANSPORT_EXIT_CODE, CommandError, TransportError
from .locking import lock_name_for
from .models import Node

logger = logging.getLogger(__name__)

SAFETY_PREAMBLE = "set -euo pipefail"
_FAIL_FAST = re.compile(r"^\s*set\s+(?:-[A-Za-z]*e[A-Za-z]*\b|-o\s+errexit\b)", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class ExecResult:
    """Outcome of a remote script execution."""

    success: bool
    stdout: str
    exit_code: int
    stderr: str = ""
    error: str | None = None
    dry_run: bool = False

    @property
    def transport_failed(self) -> bool:
        """Return ``True`` when the command never produced an exit status."""
        return self.error is not None

    @property
    def output(self) -> str:
        """Return combined output suitable for diagnostics."""
        parts = [part.strip() for part in (self.stdout, self.stderr) if part and part.strip()]
        return "\n".join(parts)


class Transport(Protocol):
    """Contract required from any remote execution channel."""

    def run(
        self,
        node: Node,
        script: str,
        args: Sequence[str] = (),
        *,
        privileged: bool = False,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> ExecResult:
        """Execute *script* on *node* with positional *args*."""
        ...


def prepare_script(script: str) -> str:
    """Return *script* with the fail-fast preamble injected when absent."""
    if _FAIL_FAST.search(script):
        return script
    lines = script.splitlines()
    if lines and lines[0].startswith("#!"):
        body = [lines[0], SAFETY_PREAMBLE, *lines[1:]]
    else:
        body = [SAFETY_PREAMBLE, *lines]
    return "\n".join(body) + "\n"


def build_remote_command(
    args: Sequence[str],
    *,
    privileged: bool,
    login_user: str,
) -> str:
    """Return the quoted command line executed by the remote login shell."""
    command = shlex.join(["bash", "-s", "--", *[str(arg) for arg in args]])
    if privileged and login_user != "root":
        command = f"sudo -n {command}"
    return command


def require_success(result: ExecResult, description: str) -> ExecResult:
    """Return *result* or raise the matching transport/command error."""
    if result.transport_failed:
        raise TransportError(
            f"{description} failed: {result.error} (exit {result.exit_code})",
            output=result.output,
        )
    if not result.success:
        raise CommandError(
            f"{description} failed (exit {result.exit_code})",
            remote_exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


class ConnectionPool:
    """OpenSSH ControlMaster sockets keyed by node name."""

    def __init__(self, control_dir: Path, *, persist: int = 60, ssh_bin: str = "ssh") -> None:
        """Store where control sockets live and how long masters persist."""
        self.control_dir = Path(control_dir)
        self.persist = persist
        self.ssh_bin = ssh_bin
        self._connections: dict[str, tuple[str, Path]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def options_for(self, node: Node, destination: str) -> list[str]:
        """Return ssh options routing *node* through its shared master."""
        with self._lock:
            if self._closed:
                raise TransportError("Connection pool is closed.")
            entry = self._connections.get(node.name)
            if entry is None:
                self.control_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
                entry = (destination, self.control_dir / f"{lock_name_for(node.name)}.sock")
                self._connections[node.name] = entry
        socket_path = entry[1]
        return [
            "-o",
            "ControlMaster=auto",
            "-o",
            f"ControlPath={socket_path}",
            "-o",
            f"ControlPersist={self.persist}",
        ]

    @property
    def nodes(self) -> tuple[str, ...]:
        """Return the names of nodes with a registered connection."""
        with self._lock:
            return tuple(sorted(self._connections))

    def close(self) -> None:
        """Tear down every master connection opened through the pool."""
        with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
            self._closed = True
        for name, (destination, socket_path) in connections:
            if not socket_path.exists():
                continue
            try:
                subprocess.run(  # noqa: S603
                    [self.ssh_bin, "-O", "exit", "-o", f"ControlPath={socket_path}", destination],
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=10,
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("Failed to close ssh master for %s: %s", name, exc)

    def __enter__(self) -> ConnectionPool:
        """Return the pool for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the pool."""
        self.close()


@dataclass(slots=True)
class SSHTransport:
    """Run scripts on nodes through the OpenSSH client."""

    pool: ConnectionPool | None = None
    ssh_bin: str = "ssh"
    default_user: str = "root"
    default_port: int = 22
    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    options: tuple[str, ...] = field(default_factory=tuple)

    def login_user(self, node: Node) -> str:
        """Return the remote login user for *node*."""
        return node.ssh_user or self.default_user

    def destination(self, node: Node) -> str:
        """Return the ``user@host`` destination for *node*."""
        return f"{self.login_user(node)}@{node.address}"

    def build_argv(self, node: Node, remote_command: str) -> list[str]:
        """Return the full ssh argv for *remote_command* on *node*."""
        destination = self.destination(node)
        argv = [
            self.ssh_bin,
            "-T",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={max(1, int(self.connect_timeout))}",
            "-p",
            str(node.ssh_port or self.default_port),
        ]
        if self.pool is not None:
            argv.extend(self.pool.options_for(node, destination))
        for option in self.options:
            argv.extend(["-o", option])
        argv.extend([destination, remote_command])
        return argv

    def run(
        self,
        node: Node,
        script: str,
        args: Sequence[str] = (),
        *,
        privileged: bool = False,
        dry_run: bool = False,
        timeout: float | None = None,
    ) -> ExecResult:
        """Execute *script* on *node*; never raises for remote failures."""
        payload = prepare_script(script)
        remote_command = build_remote_command(
            args,
            privileged=privileged,
            login_user=self.login_user(node),
        )
        if dry_run:
            logger.info("dry-run: %s on %s", remote_command, node.name)
            return ExecResult(success=True, stdout="", exit_code=0, dry_run=True)

        effective_timeout = timeout if timeout is not None else self.command_timeout
        argv = self.build_argv(node, remote_command)
        logger.debug("ssh %s: %s", node.name, remote_command)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                input=payload,
                capture_output=True,
                text=True,
                check=False,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            return ExecResult(
                success=False,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                exit_code=TRANSPORT_EXIT_CODE,
                error=f"timed out after {effective_timeout:g}s",
            )
        except OSError as exc:
            return ExecResult(
                success=False,
                stdout="",
                exit_code=TRANSPORT_EXIT_CODE,
                error=f"{self.ssh_bin} could not be executed: {exc}",
            )

        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        if completed.returncode == TRANSPORT_EXIT_CODE:
            # OpenSSH reserves 255 for its own failures.
            return ExecResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                exit_code=TRANSPORT_EXIT_CODE,
                error=stderr.strip() or "ssh connection failed",
            )
        return ExecResult(
            success=completed.returncode == 0,
            stdout=stdout,
            stderr=stderr,
            exit_code=completed.returncode,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "ConnectionPool",
    "ExecResult",
    "SAFETY_PREAMBLE",
    "SSHTransport",
    "Transport",
    "build_remote_command",
    "prepare_script",
    "require_success",
]
