"""Codex Relay - keep autonomous Codex sessions moving across limits, restarts and CI waits."""

from importlib.metadata import PackageNotFoundError, version

from codex_relay.event_log import EventLog
from codex_relay.exhaustion import ExhaustionLedger
from codex_relay.failover import FailoverController, FailoverOutcome, StopHookInput
from codex_relay.sleep_wake import SleepWakeController, WakeDecision, evaluate_wake
from codex_relay.state_store import StateRecord, StateStore, WriteResult

__all__ = [
    "EventLog",
    "ExhaustionLedger",
    "FailoverController",
    "FailoverOutcome",
    "SleepWakeController",
    "StateRecord",
    "StateStore",
    "StopHookInput",
    "WakeDecision",
    "WriteResult",
    "evaluate_wake",
]

try:
    __version__ = version("codex-relay")
except PackageNotFoundError:
    __version__ = "0.0.0"
