"""Reconciliation of drift between desired configurations and nodes."""

from __future__ import annotations

from .actions import RepairAction, RepairKind
from .engine import ActionOutcome, ReconciliationEngine, RepairReport
from .strategies import (
    OwnershipDecision,
    OwnershipEvidence,
    OwnershipStrategy,
    TrustLiveHost,
    TrustRecord,
)

__all__ = [
    "ActionOutcome",
    "OwnershipDecision",
    "OwnershipEvidence",
    "OwnershipStrategy",
    "ReconciliationEngine",
    "RepairAction",
    "RepairKind",
    "RepairReport",
    "TrustLiveHost",
    "TrustRecord",
]
