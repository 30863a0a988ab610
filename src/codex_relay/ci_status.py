"""Aggregate GitHub check runs into per-PR CI states."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel

_FAILED_CONCLUSIONS = frozenset({"failure", "timed_out", "startup_failure"})
_SUCCESS_CONCLUSIONS = frozenset({"success"})


class PrCiState(str, Enum):
    """CI state of one pull request."""

    PENDING = "pending"
    FAILED = "failed"
    PASSED = "passed"
    MIXED = "mixed"
    NO_CHECKS = "no_checks"


class CheckCounts(BaseModel):
    """Check-run tallies for one pull request."""

    pending: int = 0
    failed: int = 0
    succeeded: int = 0
    other: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.failed + self.succeeded + self.other

    def classify(self) -> PrCiState:
        if self.total == 0:
            return PrCiState.NO_CHECKS
        if self.pending > 0:
            return PrCiState.PENDING
        if self.failed > 0:
            return PrCiState.FAILED
        if self.succeeded == self.total:
            return PrCiState.PASSED
        return PrCiState.MIXED


def counts_from_check_runs(runs: Iterable[dict[str, Any]]) -> CheckCounts:
    """Tally check runs as returned by ``/commits/{sha}/check-runs``.

    Anything not yet ``completed`` is pending. Completed runs with a neutral,
    skipped or cancelled conclusion count as ``other``.
    """
    counts = CheckCounts()
    for run in runs:
        status = str(run.get("status") or "").lower()
        conclusion = str(run.get("conclusion") or "").lower()
        if status != "completed" or not conclusion:
            counts.pending += 1
        elif conclusion in _FAILED_CONCLUSIONS:
            counts.failed += 1
        elif conclusion in _SUCCESS_CONCLUSIONS:
            counts.succeeded += 1
        else:
            counts.other += 1
    return counts
