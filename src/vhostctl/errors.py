"""Error taxonomy shared by the resolver, transport and orchestration layers.

Every error carries the CLI exit code it maps to so commands can translate a
failure without inspecting its type. Validation findings are not errors and
live in :mod:`vhostctl.validator.models`.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from .exit_codes import ExitCode

TRANSPORT_EXIT_CODE = 255


class VhostctlError(RuntimeError):
    """Base class for failures surfaced to vhostctl callers."""

    exit_code: int = ExitCode.VALIDATION


class NotFoundError(VhostctlError):
    """Raised when identity resolution matches nothing."""


class AmbiguousError(VhostctlError):
    """Raised when identity resolution matches more than one tenant."""

    def __init__(self, message: str, candidates: Sequence[Mapping[str, str]]) -> None:
        """Store the candidate triples so callers can retry with a hint."""
        super().__init__(message)
        self.candidates: tuple[dict[str, str], ...] = tuple(dict(item) for item in candidates)


class PreconditionError(VhostctlError):
    """Raised when an operation is attempted from an ineligible state."""


class OperationCancelled(VhostctlError):
    """Raised when a cooperative cancellation request stops a sequence."""


class VerificationError(VhostctlError):
    """Raised when post-migration verification finds too few markers."""


class TransportError(VhostctlError):
    """Raised when the remote channel is unreachable or timed out."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, message: str, *, output: str = "") -> None:
        """Record the captured output alongside the message."""
        super().__init__(message)
        self.remote_exit_code = TRANSPORT_EXIT_CODE
        self.output = output


class CommandError(VhostctlError):
    """Raised when a remote command ran but returned non-zero."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        remote_exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Record the command's exit code and captured output."""
        detail = stderr.strip() or stdout.strip()
        super().__init__(f"{message}: {detail}" if detail else message)
        self.remote_exit_code = remote_exit_code
        self.stdout = stdout
        self.stderr = stderr


__all__ = [
    "AmbiguousError",
    "CommandError",
    "NotFoundError",
    "OperationCancelled",
    "PreconditionError",
    "TRANSPORT_EXIT_CODE",
    "TransportError",
    "VerificationError",
    "VhostctlError",
]
