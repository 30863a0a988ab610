"""Tests for check-run aggregation and per-PR CI classification."""

from __future__ import annotations

import pytest

from codex_relay.ci_status import CheckCounts, PrCiState, counts_from_check_runs

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("counts", "expected"),
    [
        (CheckCounts(), PrCiState.NO_CHECKS),
        (CheckCounts(pending=1, failed=2, succeeded=3), PrCiState.PENDING),
        (CheckCounts(failed=1, succeeded=3), PrCiState.FAILED),
        (CheckCounts(succeeded=4), PrCiState.PASSED),
        (CheckCounts(succeeded=3, other=1), PrCiState.MIXED),
    ],
)
def test_classify(counts: CheckCounts, expected: PrCiState) -> None:
    assert counts.classify() is expected


def test_counts_from_check_runs_buckets_statuses_and_conclusions(check_run) -> None:
    runs = [
        check_run("queued", None),
        check_run("in_progress", None),
        check_run("completed", None),
        check_run("completed", "failure"),
        check_run("completed", "timed_out"),
        check_run("completed", "success"),
        check_run("completed", "skipped"),
        check_run("completed", "neutral"),
    ]

    counts = counts_from_check_runs(runs)

    assert counts == CheckCounts(pending=3, failed=2, succeeded=1, other=2)
    assert counts.total == 8


def test_counts_from_empty_runs_is_no_checks() -> None:
    assert counts_from_check_runs([]).classify() is PrCiState.NO_CHECKS
