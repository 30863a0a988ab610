"""Stop-time gate that keeps a session alive while its PRs have unresolved CI.

Exit-code contract with the host runtime: ``0`` allows the stop, ``2``
blocks it and surfaces :attr:`GateDecision.message` to the agent.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from codex_relay.ci_status import PrCiState, counts_from_check_runs
from codex_relay.errors import ExternalCallError
from codex_relay.event_log import EventLog

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_BLOCK = 2
EVENT_NAME = "check-ci-before-stop"

_CI_FAILURE_NOTE_RE = re.compile(r"CI (Failed|Failure|Issue)", re.IGNORECASE)


class GateDecision(BaseModel):
    exit_code: int = EXIT_ALLOW
    message: str = ""
    running: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    undocumented: list[str] = Field(default_factory=list)
    passed: list[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.exit_code == EXIT_BLOCK


def _format_prs(prs: list[str]) -> str:
    return " ".join(f"#{pr}" for pr in prs)


def _failure_documented(client: Any, pr: str) -> bool:
    for fetch in (client.list_pull_review_comments, client.list_issue_comments):
        try:
            comments = fetch(int(pr))
        except ExternalCallError as exc:
            logger.debug("Could not read comments for PR #%s: %s", pr, exc)
            continue
        if any(_CI_FAILURE_NOTE_RE.search(str(c.get("body") or "")) for c in comments):
            return True
    return False


def evaluate_stop_gate(client: Any, event_log: EventLog | None = None) -> GateDecision:
    """Block the stop while an open PR of the current user has running or unexplained failing CI."""

    def record(event: str, data: dict[str, Any]) -> None:
        if event_log is not None:
            event_log.record("Stop", EVENT_NAME, event, data)

    record("started", {})
    try:
        try:
            author = client.current_user_login()
        except ExternalCallError as exc:
            logger.debug("Could not resolve the authenticated user: %s", exc)
            author = ""
        pulls = client.list_open_pulls(author)
    except ExternalCallError as exc:
        logger.warning("CI gate skipped: %s", exc)
        record("skipped", {"reason": str(exc)})
        return GateDecision()

    decision = GateDecision()
    for pull in pulls:
        number = pull.get("number")
        if not isinstance(number, int):
            continue
        pr = str(number)
        try:
            state = counts_from_check_runs(client.pull_check_runs(number)).classify()
        except ExternalCallError as exc:
            logger.debug("Could not read CI checks for PR #%s: %s", pr, exc)
            continue
        if state is PrCiState.PENDING:
            decision.running.append(pr)
        elif state is PrCiState.FAILED:
            decision.failed.append(pr)
        elif state is PrCiState.PASSED:
            decision.passed.append(pr)

    if not pulls:
        record("completed", {"status": "no open PRs"})
        return decision

    if decision.running:
        running = _format_prs(decision.running)
        decision.exit_code = EXIT_BLOCK
        decision.message = (
            "CI MONITORING GATE\n\n"
            f"Cannot stop: CI is still running for PRs: {running}\n\n"
            "Required action:\n"
            "1. Wait for CI to complete: gh pr checks [PR_NUMBER] --watch\n"
            "2. If CI passes, you may stop\n"
            "3. If CI fails, fix the failures before stopping\n\n"
            "PRs must have green CI before ending the session."
        )
        record("blocked", {"reason": "ci_running", "prs": running})
        return decision

    decision.undocumented = [pr for pr in decision.failed if not _failure_documented(client, pr)]
    if decision.undocumented:
        undocumented = _format_prs(decision.undocumented)
        decision.exit_code = EXIT_BLOCK
        decision.message = (
            "CI MONITORING GATE\n\n"
            f"Cannot stop: CI has failures that are not documented: {undocumented}\n\n"
            "Required action:\n"
            "1. Investigate failures: gh run view [RUN_ID] --log-failed\n"
            "2. Either:\n"
            "   a. Fix the failures and push, OR\n"
            "   b. Document the issue if unfixable (comment on PR explaining why)\n"
            "3. Retry stopping after addressing failures\n\n"
            "All CI failures must be fixed or documented before ending the session."
        )
        record("blocked", {"reason": "undocumented_failures", "prs": undocumented})
        return decision

    if decision.failed:
        decision.message = (
            f"Warning: PRs {_format_prs(decision.failed)} have failing CI "
            "but failures are documented."
        )
    record(
        "completed",
        {"passed_prs": _format_prs(decision.passed), "failed_prs": _format_prs(decision.failed)},
    )
    return decision
