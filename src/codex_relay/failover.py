"""Credential failover at host stop time.

When the session transcript shows a usage-limit error the controller marks
the active account exhausted, picks the next cooled-down account, swaps
credentials through the external switcher and terminates the host so the
supervisor relaunches it with the new credentials. With no account left it
writes a sleep-mode signal instead. Rapid back-and-forth switching trips a
circuit breaker and the stop is simply allowed.

The hook always exits 0; every failure degrades to "do nothing more".
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sys
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from codex_relay.accounts import CodexAccountCli, load_pool, resolve_account_command
from codex_relay.config import RelaySettings
from codex_relay.detection import scan_transcript, tag_message
from codex_relay.errors import MissingConfigurationError, ProcessNotFoundError, RelayError
from codex_relay.event_log import EventLog, utc_timestamp
from codex_relay.exhaustion import ExhaustionLedger
from codex_relay.process_handle import (
    DEFAULT_GRACE_SECONDS,
    ProcessLocator,
    PsutilProcessLocator,
    TerminationResult,
)
from codex_relay.signals import PendingSwitchSignal, SessionSignals, SleepModeSignal

logger = logging.getLogger(__name__)

EVENT_CATEGORY = "Stop"
EVENT_NAME = "plan-limit-account-switch"


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _stderr(message: str) -> None:
    print(message, file=sys.stderr)


class AccountSwitcher(Protocol):
    def current(self) -> str | None: ...

    def switch(self, account_id: str) -> bool: ...


class StopHookInput(BaseModel):
    """Payload the host writes to the stop hook's stdin."""

    transcript_path: str = ""
    stop_hook_active: bool = False
    session_id: str = ""

    @classmethod
    def parse(cls, raw: str) -> StopHookInput:
        """Lenient parse: malformed or partial payloads fall back to defaults."""
        try:
            payload = json.loads(raw) if raw and raw.strip() else {}
        except ValueError:
            logger.warning("Stop hook input is not JSON; ignoring it")
            return cls()
        if not isinstance(payload, dict):
            return cls()
        try:
            return cls.model_validate(
                {
                    "transcript_path": str(payload.get("transcript_path") or ""),
                    "stop_hook_active": payload.get("stop_hook_active") is True,
                    "session_id": str(payload.get("session_id") or ""),
                }
            )
        except ValidationError:
            return cls()


class FailoverAction(str, Enum):
    NO_LIMIT = "no_limit"
    NO_CURRENT_ACCOUNT = "no_current_account"
    GUARD_COOLDOWN = "guard_cooldown"
    FLAPPING = "flapping"
    SWITCHED = "switched"
    SLEEP = "sleep"
    ERROR = "error"


class FailoverOutcome(BaseModel):
    action: FailoverAction
    current_account: str | None = None
    next_account: str | None = None
    switch_ok: bool | None = None
    termination: TerminationResult | None = None
    trigger_line: str | None = None
    messages: list[str] = Field(default_factory=list)
    exit_code: int = 0


class FailoverController:
    """Stop-hook flow: detect exhaustion, rotate credentials, restart the host."""

    def __init__(
        self,
        *,
        ledger: ExhaustionLedger,
        switcher: AccountSwitcher | None,
        pool_source: Callable[[str | None], list[str]],
        signals: SessionSignals,
        locator: ProcessLocator,
        event_log: EventLog | None = None,
        host_binary: str = "codex",
        flap_window_seconds: int = 60,
        flap_threshold: int = 3,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Callable[[], dt.datetime] = _utc_now,
        notify: Callable[[str], None] = _stderr,
    ) -> None:
        self.ledger = ledger
        self.switcher = switcher
        self.pool_source = pool_source
        self.signals = signals
        self.locator = locator
        self.event_log = event_log
        self.host_binary = host_binary
        self.flap_window_seconds = flap_window_seconds
        self.flap_threshold = flap_threshold
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._notify = notify

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        *,
        hook_input: StopHookInput | None = None,
        event_log: EventLog | None = None,
    ) -> FailoverController:
        session_id = settings.session_id or (hook_input.session_id if hook_input else "")
        try:
            switcher: AccountSwitcher | None = CodexAccountCli(
                resolve_account_command(settings.account_cmd)
            )
        except MissingConfigurationError as exc:
            logger.warning("%s", exc)
            switcher = None
        return cls(
            ledger=ExhaustionLedger(settings.exhaustion_file, settings.cooldown_minutes),
            switcher=switcher,
            pool_source=lambda current: load_pool(current, env_file=settings.env_file).ids,
            signals=SessionSignals(settings.state_dir, session_id),
            locator=PsutilProcessLocator(),
            event_log=event_log,
            host_binary=settings.host_binary,
            flap_window_seconds=settings.flap_window_seconds,
            flap_threshold=settings.flap_threshold,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, event: str, data: dict[str, Any] | None = None) -> None:
        if self.event_log is not None:
            self.event_log.record(EVENT_CATEGORY, EVENT_NAME, event, data)

    def _say(self, outcome: FailoverOutcome, message: str) -> None:
        tagged = tag_message(message)
        outcome.messages.append(tagged)
        self._notify(tagged)

    def _is_flapping(self, now: dt.datetime) -> bool:
        return self.ledger.is_flapping(self.flap_window_seconds, self.flap_threshold, now)

    def terminate_host(self, outcome: FailoverOutcome, reason: str) -> None:
        """Stop the host process so its supervisor restarts it."""
        try:
            handle = self.locator.locate(self.host_binary)
            if handle is None:
                raise ProcessNotFoundError(f"no running {self.host_binary} process")
        except ProcessNotFoundError as exc:
            logger.info("%s", exc)
            self._say(
                outcome,
                f"Could not find {self.host_binary} process to terminate. Manual restart required.",
            )
            self._record("terminate", {"found": False, "reason": reason})
            return

        self._say(outcome, f"Terminating {self.host_binary} (PID {handle.pid}) due to {reason}...")
        result = handle.terminate(self.grace_seconds)
        if result is TerminationResult.KILLED:
            self._say(outcome, f"{self.host_binary} didn't exit cleanly, sent SIGKILL.")
        outcome.termination = result
        self._record(
            "terminate",
            {"found": True, "pid": handle.pid, "result": result.value, "reason": reason},
        )

    # ------------------------------------------------------------------
    # Stop flow
    # ------------------------------------------------------------------

    def handle_stop(self, hook_input: StopHookInput) -> FailoverOutcome:
        """Run the stop-hook flow; never raises."""
        self._record("started", {"stop_hook_active": hook_input.stop_hook_active})
        try:
            outcome = self._handle_stop(hook_input)
        except (RelayError, OSError) as exc:
            logger.warning("Account failover aborted: %s", exc)
            self._record("error", {"reason": str(exc)})
            return FailoverOutcome(action=FailoverAction.ERROR)
        except Exception as exc:
            logger.exception("Unexpected error during account failover")
            self._record("error", {"reason": repr(exc)})
            return FailoverOutcome(action=FailoverAction.ERROR)
        self._record(
            "completed",
            {
                "action": outcome.action.value,
                "from": outcome.current_account,
                "to": outcome.next_account,
            },
        )
        return outcome

    def _handle_stop(self, hook_input: StopHookInput) -> FailoverOutcome:
        now = self._clock()

        if hook_input.stop_hook_active and self._is_flapping(now):
            outcome = FailoverOutcome(action=FailoverAction.GUARD_COOLDOWN)
            self._say(outcome, "All accounts appear exhausted. Entering cooldown.")
            return outcome

        trigger = None
        if hook_input.transcript_path:
            trigger = scan_transcript(hook_input.transcript_path)
        if trigger is None:
            return FailoverOutcome(action=FailoverAction.NO_LIMIT)
        self._record("limit_detected", {"line": trigger[:200]})

        current = self.switcher.current() if self.switcher is not None else None
        if not current:
            logger.info("Usage limit detected but the current account is unknown")
            return FailoverOutcome(action=FailoverAction.NO_CURRENT_ACCOUNT, trigger_line=trigger)

        self.ledger.mark_exhausted(current, now)
        self._record("exhausted", {"account": current})

        successor = self.ledger.get_next_available(current, self.pool_source(current), now)
        if successor is None:
            return self._enter_sleep(current, trigger, now)

        self.ledger.record_switch(current, successor, now)
        if self._is_flapping(now):
            outcome = FailoverOutcome(
                action=FailoverAction.FLAPPING,
                current_account=current,
                next_account=successor,
                trigger_line=trigger,
            )
            self._say(
                outcome,
                "Account switch flapping detected. All accounts may be exhausted. "
                "Entering cooldown.",
            )
            self._record("flapping", {"from": current, "to": successor})
            return outcome

        return self._switch(current, successor, trigger, now)

    def _switch(
        self, current: str, successor: str, trigger: str, now: dt.datetime
    ) -> FailoverOutcome:
        outcome = FailoverOutcome(
            action=FailoverAction.SWITCHED,
            current_account=current,
            next_account=successor,
            trigger_line=trigger,
        )
        outcome.switch_ok = self.switcher.switch(successor) if self.switcher is not None else False
        if outcome.switch_ok:
            self._say(outcome, f"Plan limit on {current}. Switched credentials to {successor}.")
            self._say(
                outcome, "Codex must restart to use new credentials. Use --resume to continue."
            )
        else:
            self._say(outcome, f"Failed to switch to {successor}. Manual intervention required.")
        self._record("switched", {"from": current, "to": successor, "ok": outcome.switch_ok})

        try:
            self.signals.write_pending_switch(
                PendingSwitchSignal(
                    from_account=current,
                    to_account=successor,
                    timestamp=utc_timestamp(now),
                )
            )
        except OSError as exc:
            logger.warning("Failed to write switch state file: %s", exc)

        self.terminate_host(outcome, f"account switch to {successor}")
        return outcome

    def _enter_sleep(self, current: str, trigger: str, now: dt.datetime) -> FailoverOutcome:
        outcome = FailoverOutcome(
            action=FailoverAction.SLEEP,
            current_account=current,
            trigger_line=trigger,
        )
        self._say(
            outcome,
            "Plan limit reached. No available accounts to switch to. "
            "All accounts exhausted or in cooldown.",
        )
        self._record("sleep", {"account": current})
        try:
            self.signals.write_sleep_mode(
                SleepModeSignal(
                    exhausted_account=current,
                    timestamp=utc_timestamp(now),
                    cooldown_minutes=self.ledger.cooldown_minutes,
                )
            )
        except OSError as exc:
            logger.warning("Failed to write sleep state file: %s", exc)

        self.terminate_host(outcome, "all accounts exhausted")
        return outcome
