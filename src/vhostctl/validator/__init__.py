"""Drift validation between desired configurations and live nodes."""

from __future__ import annotations

from .engine import DriftValidator
from .models import (
    Finding,
    FindingCategory,
    Severity,
    ValidationResult,
    ValidationStatus,
    aggregate_status,
)

__all__ = [
    "DriftValidator",
    "Finding",
    "FindingCategory",
    "Severity",
    "ValidationResult",
    "ValidationStatus",
    "aggregate_status",
]
