"""Data models for drift validation."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..models import utc_now

if TYPE_CHECKING:
    from ..generator import OsProfile
    from ..models import Node, Tenant
    from ..transport import Transport


class Severity(str, Enum):
    """Classification of a single finding."""

    PASSED = "passed"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Return the ordering weight of this severity."""
        return SEVERITY_ORDER[self]


SEVERITY_ORDER: Mapping[Severity, int] = {
    Severity.PASSED: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


class FindingCategory(str, Enum):
    """Closed set of finding categories; each maps to at most one repair."""

    VCONF_MISMATCH = "vconf_mismatch"
    WEB_GROUP = "web_group"
    FOOTPRINT = "footprint"
    RECORD = "record"
    USER = "user"
    DIRECTORY = "directory"
    PERMISSIONS = "permissions"
    CONFIG_FILE = "config_file"
    SERVICE = "service"
    SECURITY = "security"
    TRANSPORT = "transport"


class ValidationStatus(str, Enum):
    """Overall outcome of a validation run."""

    PASSED = "passed"
    PASSED_WITH_WARNINGS = "passed_with_warnings"
    NEEDS_FIXES = "needs_fixes"
    FAILED = "failed"

    @property
    def is_healthy(self) -> bool:
        """Return ``True`` for the two passing outcomes."""
        return self in (ValidationStatus.PASSED, ValidationStatus.PASSED_WITH_WARNINGS)


@dataclass(slots=True, frozen=True)
class Finding:
    """One classified observation made by a check."""

    check: str
    category: FindingCategory
    severity: Severity
    message: str
    expected: str | None = None
    actual: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        payload: dict[str, Any] = {
            "check": self.check,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.expected is not None:
            payload["expected"] = self.expected
        if self.actual is not None:
            payload["actual"] = self.actual
        if self.data:
            payload["data"] = dict(self.data)
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Finding:
        """Rebuild a finding from its serialised form."""
        raw_data = data.get("data")
        return cls(
            check=str(data.get("check", "")),
            category=FindingCategory(str(data["category"])),
            severity=Severity(str(data["severity"])),
            message=str(data.get("message", "")),
            expected=_optional(data.get("expected")),
            actual=_optional(data.get("actual")),
            data=dict(raw_data) if isinstance(raw_data, Mapping) else {},
        )


def passed(check: str, category: FindingCategory, message: str, **data: Any) -> Finding:
    """Return a passing finding."""
    return Finding(check, category, Severity.PASSED, message, data=data)


@dataclass(slots=True, frozen=True)
class ValidationResult:
    """Findings of one validation run, grouped by severity."""

    tenant: str
    passed: tuple[Finding, ...] = ()
    warnings: tuple[Finding, ...] = ()
    issues: tuple[Finding, ...] = ()
    checked_at: str = field(default_factory=utc_now)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def findings(self) -> tuple[Finding, ...]:
        """Return every finding, most severe first."""
        return (
            tuple(item for item in self.issues if item.severity is Severity.CRITICAL)
            + tuple(item for item in self.issues if item.severity is Severity.ERROR)
            + self.warnings
            + self.passed
        )

    @property
    def status(self) -> ValidationStatus:
        """Return the aggregated status."""
        return aggregate_status(self.issues + self.warnings)

    @property
    def actionable(self) -> tuple[Finding, ...]:
        """Return warnings and issues, the input of reconciliation."""
        return tuple(item for item in self.findings if item.severity is not Severity.PASSED)

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "tenant": self.tenant,
            "status": self.status.value,
            "checked_at": self.checked_at,
            "passed": [item.to_dict() for item in self.passed],
            "warnings": [item.to_dict() for item in self.warnings],
            "issues": [item.to_dict() for item in self.issues],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ValidationResult:
        """Rebuild a result from a stored snapshot."""

        def _group(name: str) -> tuple[Finding, ...]:
            raw = data.get(name)
            if not isinstance(raw, list):
                return ()
            return tuple(Finding.from_mapping(item) for item in raw if isinstance(item, Mapping))

        metadata = data.get("metadata")
        return cls(
            tenant=str(data.get("tenant", "")),
            passed=_group("passed"),
            warnings=_group("warnings"),
            issues=_group("issues"),
            checked_at=str(data.get("checked_at") or utc_now()),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def aggregate_status(findings: Iterable[Finding]) -> ValidationStatus:
    """Collapse *findings* into an overall status.

    Any critical finding fails the run, otherwise any error needs fixes,
    otherwise any warning passes with warnings.
    """
    worst = Severity.PASSED
    for finding in findings:
        if finding.severity.rank > worst.rank:
            worst = finding.severity
    if worst is Severity.CRITICAL:
        return ValidationStatus.FAILED
    if worst is Severity.ERROR:
        return ValidationStatus.NEEDS_FIXES
    if worst is Severity.WARNING:
        return ValidationStatus.PASSED_WITH_WARNINGS
    return ValidationStatus.PASSED


def build_result(
    tenant: str,
    findings: Sequence[Finding],
    metadata: Mapping[str, Any] | None = None,
) -> ValidationResult:
    """Group *findings* into a :class:`ValidationResult`."""
    return ValidationResult(
        tenant=tenant,
        passed=tuple(item for item in findings if item.severity is Severity.PASSED),
        warnings=tuple(item for item in findings if item.severity is Severity.WARNING),
        issues=tuple(
            item for item in findings if item.severity in (Severity.ERROR, Severity.CRITICAL)
        ),
        metadata=dict(metadata or {}),
    )


@dataclass(slots=True, frozen=True)
class CheckContext:
    """Everything a check needs to inspect one tenant."""

    tenant: Tenant
    node: Node
    vconf: Mapping[str, str]
    transport: Transport
    profile: OsProfile


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check."""

    id: str
    category: FindingCategory
    run: Callable[[CheckContext], list[Finding]]
    requires_record: bool = True


def _optional(value: object) -> str | None:
    return None if value is None else str(value)


__all__ = [
    "CheckContext",
    "CheckDefinition",
    "Finding",
    "FindingCategory",
    "SEVERITY_ORDER",
    "Severity",
    "ValidationResult",
    "ValidationStatus",
    "aggregate_status",
    "build_result",
    "passed",
]
