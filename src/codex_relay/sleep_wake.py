"""Pause and resume orchestration around CI runs.

While an orchestration waits on CI it records a sleep state on the tracking
issue. At session start :meth:`SleepWakeController.check_and_wake` reads that
state back, looks at the check runs of every tracked pull request and wakes
the orchestration once none of them is still running.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from codex_relay.ci_status import CheckCounts, PrCiState, counts_from_check_runs
from codex_relay.errors import ExternalCallError
from codex_relay.event_log import EventLog, utc_timestamp
from codex_relay.markers import SLEEP_STATUS
from codex_relay.state_store import Clock, StateStore, WriteResult

logger = logging.getLogger(__name__)

EVENT_NAME = "check-orchestration-sleep"


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def normalize_pr_ids(values: Iterable[Any] | str | None) -> list[str]:
    """Accept ``"12, #13"`` or an iterable of ids; drop blanks and duplicates."""
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        pr = str(value or "").strip().lstrip("#").strip()
        if not pr or pr in seen:
            continue
        seen.add(pr)
        out.append(pr)
    return out


class SleepState(BaseModel):
    """Sleep status persisted on the tracking issue."""

    sleeping: bool = False
    reason: str = ""
    since: str = ""
    waiting_on: list[str] = Field(default_factory=list)
    resume_session: str | None = None
    wake_reason: str = ""
    woke_at: str = ""

    @field_validator("waiting_on", mode="before")
    @classmethod
    def _normalize_waiting_on(cls, value: Any) -> list[str]:
        return normalize_pr_ids(value)


class WakeDecision(str, Enum):
    STILL_SLEEPING = "still_sleeping"
    WAKE_ALL_PASSED = "wake_all_passed"
    WAKE_WITH_FAILURES = "wake_with_failures"


_WAKE_REASONS = {
    WakeDecision.WAKE_ALL_PASSED: "ci_complete_all_passed",
    WakeDecision.WAKE_WITH_FAILURES: "ci_complete_with_failures",
}


class WakeEvaluation(BaseModel):
    decision: WakeDecision
    classifications: dict[str, PrCiState] = Field(default_factory=dict)
    nothing_to_wait_on: bool = False

    @property
    def should_wake(self) -> bool:
        return self.decision is not WakeDecision.STILL_SLEEPING

    @property
    def wake_reason(self) -> str:
        return _WAKE_REASONS.get(self.decision, "")


def evaluate_wake(pr_statuses: Mapping[str, CheckCounts]) -> WakeEvaluation:
    """Decide whether the orchestration may resume.

    Resume only when no tracked PR has a pending check. An empty waiting set
    keeps sleeping but flags ``nothing_to_wait_on`` so the caller can offer a
    manual wake.
    """
    if not pr_statuses:
        return WakeEvaluation(decision=WakeDecision.STILL_SLEEPING, nothing_to_wait_on=True)

    classifications = {str(pr): counts.classify() for pr, counts in pr_statuses.items()}
    states = set(classifications.values())
    if PrCiState.PENDING in states:
        decision = WakeDecision.STILL_SLEEPING
    elif PrCiState.FAILED in states:
        decision = WakeDecision.WAKE_WITH_FAILURES
    else:
        decision = WakeDecision.WAKE_ALL_PASSED
    return WakeEvaluation(decision=decision, classifications=classifications)


class SleepCheckReport(BaseModel):
    """What a session-start sleep check found and did."""

    issue_id: int
    state: SleepState | None = None
    evaluation: WakeEvaluation | None = None
    counts: dict[str, CheckCounts] = Field(default_factory=dict)
    woke: bool = False
    outcome: str = ""


class SleepWakeController:
    """Sleep/wake transitions for the orchestration tracked on one issue."""

    def __init__(
        self,
        store: StateStore,
        issue_id: int,
        *,
        client: Any = None,
        event_log: EventLog | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.store = store
        self.issue_id = int(issue_id)
        self.client = client if client is not None else store.client
        self.event_log = event_log
        self._clock = clock

    def _record(self, event: str, data: dict[str, Any] | None = None) -> None:
        if self.event_log is not None:
            self.event_log.record("SessionStart", EVENT_NAME, event, data)

    def status(self) -> SleepState | None:
        record = self.store.get(self.issue_id, SLEEP_STATUS)
        if record is None:
            return None
        try:
            return SleepState.model_validate(record.payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed sleep state on issue #%s: %s", self.issue_id, exc)
            return None

    def enter_sleep(
        self,
        reason: str,
        waiting_pr_ids: Iterable[Any] | str | None,
        resume_session_id: str | None = None,
    ) -> WriteResult:
        since = utc_timestamp(self._clock())
        state = SleepState(
            sleeping=True,
            reason=str(reason or "").strip(),
            since=since,
            waiting_on=normalize_pr_ids(waiting_pr_ids),
            resume_session=(resume_session_id or "").strip() or None,
        )
        lines = [
            "**Orchestration Sleeping**",
            f"- **Reason:** {state.reason}",
            f"- **Since:** {since}",
            f"- **Waiting On:** {', '.join(state.waiting_on) or 'none'}",
        ]
        if state.resume_session:
            lines.append(f"- **Resume Session:** `{state.resume_session}`")
        return self.store.set(
            self.issue_id,
            SLEEP_STATUS,
            "sleeping",
            state.model_dump(),
            summary="\n".join(lines),
        )

    def wake(self, reason: str) -> WriteResult:
        woke_at = utc_timestamp(self._clock())
        state = SleepState(sleeping=False, wake_reason=str(reason or "").strip(), woke_at=woke_at)
        summary = "\n".join(
            [
                "**Orchestration Awake**",
                f"- **Wake Reason:** {state.wake_reason}",
                f"- **Woke At:** {woke_at}",
            ]
        )
        return self.store.set(
            self.issue_id,
            SLEEP_STATUS,
            "awake",
            state.model_dump(exclude={"reason", "since", "waiting_on", "resume_session"}),
            summary=summary,
        )

    def fetch_pr_statuses(self, pr_ids: Iterable[str]) -> dict[str, CheckCounts]:
        """Check-run tallies per PR. A PR whose checks cannot be read counts as pending."""
        statuses: dict[str, CheckCounts] = {}
        for pr in pr_ids:
            try:
                runs = self.client.pull_check_runs(pr)
            except (ExternalCallError, ValueError) as exc:
                logger.warning("Could not read CI checks for PR #%s: %s", pr, exc)
                statuses[pr] = CheckCounts(pending=1)
                continue
            statuses[pr] = counts_from_check_runs(runs)
        return statuses

    def check_and_wake(self) -> SleepCheckReport:
        """Session-start flow: wake the orchestration when tracked CI has finished."""
        self._record("started", {"issue": str(self.issue_id)})
        report = SleepCheckReport(issue_id=self.issue_id)

        state = self.status()
        report.state = state
        if state is None:
            report.outcome = "no_sleep_state"
            self._record("skipped", {"reason": "no sleep state"})
            return report
        if not state.sleeping:
            report.outcome = "not_sleeping"
            self._record("completed", {"status": "not sleeping"})
            return report

        counts = self.fetch_pr_statuses(state.waiting_on)
        evaluation = evaluate_wake(counts)
        report.counts = counts
        report.evaluation = evaluation
        pr_summary = [
            {
                "pr": pr,
                "status": evaluation.classifications[pr].value,
                "passed": tally.succeeded,
                "total": tally.total,
            }
            for pr, tally in counts.items()
        ]

        if evaluation.nothing_to_wait_on:
            report.outcome = "nothing_to_wait_on"
            self._record(
                "completed",
                {"status": "sleeping", "wake": False, "reason": "no PRs to monitor"},
            )
            return report

        if not evaluation.should_wake:
            report.outcome = "still_sleeping"
            self._record("completed", {"status": "still_sleeping", "prs": pr_summary})
            return report

        result = self.wake(evaluation.wake_reason)
        report.woke = result.ok
        report.outcome = evaluation.wake_reason
        self._record(
            "wake_triggered",
            {"reason": evaluation.wake_reason, "prs": pr_summary, "written": result.ok},
        )
        return report
