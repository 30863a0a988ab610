"""Tests for the local exhaustion ledger: cooldown, rotation order and flap detection."""

from __future__ import annotations

import datetime as dt
import json
import os
import stat
from pathlib import Path

import pytest

from codex_relay.exhaustion import MAX_SWITCH_HISTORY, ExhaustionLedger

pytestmark = pytest.mark.unit

T0 = dt.datetime(2026, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc)
POOL = ["a@x.io", "b@x.io", "c@x.io"]


@pytest.fixture
def ledger(tmp_path: Path) -> ExhaustionLedger:
    return ExhaustionLedger(tmp_path / ".account-exhaustion.json", cooldown_minutes=5)


def test_cooldown_boundary(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("a@x.io", T0)

    assert ledger.is_cooled_down("a@x.io", T0 + dt.timedelta(minutes=5, seconds=-1)) is False
    assert ledger.is_cooled_down("a@x.io", T0 + dt.timedelta(minutes=5)) is True
    assert ledger.is_cooled_down("never@x.io", T0) is True


def test_cooldown_remaining(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("a@x.io", T0)

    assert ledger.cooldown_remaining("a@x.io", T0 + dt.timedelta(minutes=2)) == dt.timedelta(
        minutes=3
    )
    assert ledger.cooldown_remaining("a@x.io", T0 + dt.timedelta(hours=1)) == dt.timedelta(0)
    assert ledger.cooldown_remaining("b@x.io", T0) == dt.timedelta(0)


def test_next_available_walks_ring_after_current(ledger: ExhaustionLedger) -> None:
    assert ledger.get_next_available("a@x.io", POOL, T0) == "b@x.io"
    assert ledger.get_next_available("c@x.io", POOL, T0) == "a@x.io"


def test_next_available_skips_accounts_in_cooldown(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("b@x.io", T0)

    assert ledger.get_next_available("a@x.io", POOL, T0 + dt.timedelta(minutes=1)) == "c@x.io"


def test_next_available_never_returns_current(ledger: ExhaustionLedger) -> None:
    assert ledger.get_next_available("a@x.io", ["a@x.io"], T0) is None
    assert ledger.get_next_available("a@x.io", [], T0) is None


def test_next_available_starts_at_head_when_current_unknown(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("a@x.io", T0)

    assert ledger.get_next_available("z@x.io", POOL, T0) == "b@x.io"


def test_two_account_pool_reopens_after_cooldown(ledger: ExhaustionLedger) -> None:
    pool = ["a@x.io", "b@x.io"]
    ledger.mark_exhausted("a@x.io", T0)
    ledger.mark_exhausted("b@x.io", T0)

    assert ledger.get_next_available("b@x.io", pool, T0 + dt.timedelta(minutes=1)) is None
    assert ledger.get_next_available("b@x.io", pool, T0 + dt.timedelta(minutes=6)) == "a@x.io"


def test_three_account_pool_all_exhausted_then_reopens_in_ring_order(
    ledger: ExhaustionLedger,
) -> None:
    for account in POOL:
        ledger.mark_exhausted(account, T0)

    assert ledger.get_next_available("c@x.io", POOL, T0 + dt.timedelta(minutes=1)) is None
    assert ledger.get_next_available("c@x.io", POOL, T0 + dt.timedelta(minutes=6)) == "a@x.io"


def test_is_flapping_counts_switches_inside_window(ledger: ExhaustionLedger) -> None:
    ledger.record_switch("a@x.io", "b@x.io", T0)
    ledger.record_switch("b@x.io", "c@x.io", T0 + dt.timedelta(seconds=20))
    ledger.record_switch("c@x.io", "a@x.io", T0 + dt.timedelta(seconds=40))

    now = T0 + dt.timedelta(seconds=40)
    assert ledger.is_flapping(60, 3, now) is True
    assert ledger.is_flapping(60, 4, now) is False
    # the first switch ages out once it is exactly window seconds old
    assert ledger.is_flapping(60, 3, T0 + dt.timedelta(seconds=60)) is False


def test_switch_history_keeps_last_twenty(ledger: ExhaustionLedger) -> None:
    for i in range(MAX_SWITCH_HISTORY + 5):
        ledger.record_switch(f"{i}@x.io", f"{i + 1}@x.io", T0 + dt.timedelta(seconds=i))

    switches = ledger.snapshot().switches

    assert len(switches) == MAX_SWITCH_HISTORY
    assert switches[0].from_account == "5@x.io"
    assert switches[-1].to_account == "25@x.io"


def test_file_layout_matches_ledger_format(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("a@x.io", T0)
    ledger.record_switch("a@x.io", "b@x.io", T0)

    payload = json.loads(ledger.path.read_text(encoding="utf-8"))

    assert payload == {
        "exhausted": {"a@x.io": "2026-03-01T12:00:00Z"},
        "switches": [{"from": "a@x.io", "to": "b@x.io", "timestamp": int(T0.timestamp())}],
        "cooldown_minutes": 5,
    }


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_ledger_file_is_owner_only(ledger: ExhaustionLedger) -> None:
    ledger.mark_exhausted("a@x.io", T0)

    assert stat.S_IMODE(ledger.path.stat().st_mode) == 0o600


@pytest.mark.parametrize("content", ["", "{not json", "[1, 2]", '{"switches": "bad"}'])
def test_corrupt_ledger_reads_as_empty(ledger: ExhaustionLedger, content: str) -> None:
    ledger.path.write_text(content, encoding="utf-8")

    assert ledger.is_cooled_down("a@x.io", T0) is True
    assert ledger.is_flapping(60, 1, T0) is False

    ledger.mark_exhausted("a@x.io", T0)
    assert ledger.exhausted_at("a@x.io") == T0


def test_legacy_file_written_by_shell_hook_is_read(ledger: ExhaustionLedger) -> None:
    ledger.path.write_text(
        json.dumps(
            {
                "exhausted": {"a@x.io": "2026-03-01T11:58:00Z"},
                "switches": [{"from": "a@x.io", "to": "b@x.io", "timestamp": int(T0.timestamp())}],
                "cooldown_minutes": 5,
            }
        ),
        encoding="utf-8",
    )

    assert ledger.is_cooled_down("a@x.io", T0) is False
    assert ledger.is_flapping(60, 1, T0) is True
