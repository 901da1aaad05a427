"""Bounded-concurrency sweeps of single-tenant operations across the fleet."""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


@dataclass(slots=True, frozen=True)
class SweepOutcome(Generic[ItemT, ResultT]):
    """Result of running the operation for one item."""

    item: ItemT
    result: ResultT | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        """Return ``True`` when the operation returned normally."""
        return self.error is None


def _run_single(
    operation: Callable[[ItemT], ResultT],
    item: ItemT,
) -> SweepOutcome[ItemT, ResultT]:
    try:
        return SweepOutcome(item, operation(item))
    except Exception as exc:  # noqa: BLE001 - reported per item
        logger.warning("Fleet operation failed for %s: %s", item, exc)
        return SweepOutcome(item, error=exc)


def sweep(
    items: Sequence[ItemT],
    operation: Callable[[ItemT], ResultT],
    max_workers: int = 4,
) -> list[SweepOutcome[ItemT, ResultT]]:
    """Run *operation* for every item; outcomes keep the order of *items*.

    ``max_workers`` bounds the number of concurrent remote sessions so a
    node's SSH session limit is never saturated.
    """
    if not items:
        return []

    workers = max(1, max_workers)
    if workers == 1:
        return [_run_single(operation, item) for item in items]

    outcomes: list[SweepOutcome[ItemT, ResultT] | None] = [None] * len(items)
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_index: dict[concurrent.futures.Future[SweepOutcome[ItemT, ResultT]], int] = {}
        for index, item in enumerate(items):
            future = executor.submit(_run_single, operation, item)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            outcomes[future_to_index[future]] = future.result()

    return [outcome for outcome in outcomes if outcome is not None]


__all__ = ["SweepOutcome", "sweep"]
