"""CLI entrypoint for codex-relay: hook entry points and operator commands."""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from codex_relay.accounts import CodexAccountCli, load_pool, resolve_account_command
from codex_relay.ci_gate import EXIT_ALLOW, evaluate_stop_gate
from codex_relay.config import RelaySettings
from codex_relay.errors import MissingConfigurationError
from codex_relay.event_log import EventLog
from codex_relay.exhaustion import ExhaustionLedger
from codex_relay.failover import FailoverController, StopHookInput
from codex_relay.git_tools import detect_github_repo
from codex_relay.github_client import GitHubClient
from codex_relay.markers import MARKERS
from codex_relay.signals import SessionSignals
from codex_relay.sleep_wake import SleepCheckReport, SleepWakeController
from codex_relay.state_store import StateStore, resolve_tracking_issue

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so hooks find it regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all hook and operator commands."""
    p = argparse.ArgumentParser(
        prog="codex-relay",
        description=(
            "codex-relay - account failover, CI sleep/wake and issue-backed state "
            "for autonomous Codex sessions."
        ),
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # -- Hooks ----------------------------------------------------------------
    sub.add_parser(
        "stop-hook",
        help="Stop hook: detect usage limits and rotate accounts (reads hook JSON on stdin).",
    )
    gate_p = sub.add_parser(
        "ci-gate",
        help="Stop hook: block while your open PRs have running or undocumented failing CI.",
    )
    sleep_check_p = sub.add_parser(
        "sleep-check",
        help="Session-start hook: wake a sleeping orchestration once tracked CI finished.",
    )

    # -- Orchestration sleep --------------------------------------------------
    sleep_p = sub.add_parser("sleep", help="Put the orchestration to sleep until CI completes.")
    sleep_p.add_argument("--reason", type=str, default="waiting_for_ci", help="Why it sleeps.")
    sleep_p.add_argument(
        "--prs",
        type=str,
        default="",
        help="Comma-separated PR numbers to wait on (e.g. '12,#13').",
    )
    sleep_p.add_argument(
        "--resume-session",
        type=str,
        default="",
        help="Session id to resume on wake (default: current session).",
    )
    wake_p = sub.add_parser("wake", help="Wake the orchestration now.")
    wake_p.add_argument("--reason", type=str, default="manual", help="Wake reason to record.")

    # -- Raw state ------------------------------------------------------------
    state_p = sub.add_parser("state", help="Read or write a marker record on the tracking issue.")
    state_sub = state_p.add_subparsers(dest="state_command")
    state_get = state_sub.add_parser("get", help="Print the latest record for a marker.")
    state_get.add_argument("marker", choices=sorted(MARKERS), help="Marker type.")
    state_set = state_sub.add_parser("set", help="Create or overwrite the record for a marker.")
    state_set.add_argument("marker", choices=sorted(MARKERS), help="Marker type.")
    state_set.add_argument("status", type=str, help="Status value to store.")
    state_set.add_argument(
        "--data",
        type=str,
        default="{}",
        help="JSON object stored as the record payload (default: {}).",
    )
    state_set.add_argument(
        "--expected-updated-at",
        type=str,
        default=None,
        help="Only write when the live record still carries this updated_at.",
    )

    for gh_p in (gate_p, sleep_check_p, sleep_p, wake_p, state_p):
        gh_p.add_argument(
            "--repo",
            type=str,
            default="",
            help="GitHub repository 'owner/name' (default: GITHUB_REPO or the git remote).",
        )
    for issue_p in (sleep_check_p, sleep_p, wake_p, state_p):
        issue_p.add_argument(
            "--issue",
            type=int,
            default=None,
            help="Tracking issue number (default: TRACKING_ISSUE or the 'orchestration' label).",
        )

    # -- Local inspection -----------------------------------------------------
    sub.add_parser("accounts", help="Show the account pool and cooldown status.")
    signals_p = sub.add_parser("signals", help="Show this session's signal files.")
    signals_p.add_argument("--clear", action="store_true", help="Delete the signal files.")
    events_p = sub.add_parser("events", help="Show recent hook events.")
    events_p.add_argument("--limit", type=int, default=10, help="Number of events (default: 10).")
    events_p.add_argument("--category", type=str, default=None, help="Only this category.")
    events_p.add_argument("--summary", action="store_true", help="Show counts per category.")
    return p


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _github_client(settings: RelaySettings, repo_arg: str = "") -> GitHubClient:
    repo = (repo_arg or "").strip() or settings.github_repo or detect_github_repo()
    if not repo:
        raise MissingConfigurationError(
            "GitHub repository unknown: pass --repo, set GITHUB_REPO or add an 'origin' remote"
        )
    return GitHubClient(
        repo,
        token=settings.github_token,
        api_url=settings.github_api_url,
        timeout_seconds=settings.github_timeout_seconds,
    )


def _tracking_issue(settings: RelaySettings, client: GitHubClient, issue_arg: int | None) -> int:
    configured = issue_arg if issue_arg is not None else settings.tracking_issue
    issue = resolve_tracking_issue(client, configured)
    if issue is None:
        raise MissingConfigurationError(
            "Tracking issue unknown: pass --issue, set TRACKING_ISSUE "
            "or label an issue 'orchestration'"
        )
    return issue


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _print_sleep_report(report: SleepCheckReport) -> None:
    state = report.state
    if state is None:
        print(f"No sleep state on issue #{report.issue_id}.")
        return
    if not state.sleeping:
        print(f"Orchestration on issue #{report.issue_id} is awake.")
        return

    print("=" * 60)
    print("ORCHESTRATION SLEEP CHECK")
    print("=" * 60)
    print(f"Sleeping since: {state.since or 'unknown'}")
    print(f"Reason:         {state.reason or 'unknown'}")
    print(f"Waiting on:     {', '.join(f'#{pr}' for pr in state.waiting_on) or 'nothing'}")
    if report.evaluation is not None:
        for pr, ci_state in report.evaluation.classifications.items():
            tally = report.counts.get(pr)
            detail = f" ({tally.succeeded}/{tally.total} passed)" if tally is not None else ""
            print(f"  PR #{pr}: {ci_state.value}{detail}")

    if report.outcome == "nothing_to_wait_on":
        print("\nNo PRs to monitor. Wake manually with: codex-relay wake")
    elif report.outcome == "still_sleeping":
        print("\nCI still running. Orchestration remains asleep.")
    elif report.woke:
        print(f"\nCI complete. Orchestration woken ({report.outcome}).")
        if state.resume_session:
            print(f"Resume with session: {state.resume_session}")
    else:
        print(f"\nCI complete ({report.outcome}) but the wake could not be recorded.")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _run_stop_hook(settings: RelaySettings, event_log: EventLog) -> int:
    try:
        hook_input = StopHookInput.parse(sys.stdin.read())
        controller = FailoverController.from_settings(
            settings, hook_input=hook_input, event_log=event_log
        )
        outcome = controller.handle_stop(hook_input)
    except Exception:
        # The host must never see a failing stop hook.
        logger.exception("Stop hook failed; allowing stop")
        return 0
    logger.debug("Stop hook outcome: %s", outcome.action.value)
    return outcome.exit_code


def _run_ci_gate(settings: RelaySettings, event_log: EventLog, args: argparse.Namespace) -> int:
    try:
        client = _github_client(settings, args.repo)
    except MissingConfigurationError as exc:
        logger.info("CI gate skipped: %s", exc)
        return EXIT_ALLOW
    decision = evaluate_stop_gate(client, event_log)
    if decision.message:
        print(decision.message, file=sys.stderr)
    return decision.exit_code


def _run_sleep_check(settings: RelaySettings, event_log: EventLog, args: argparse.Namespace) -> int:
    try:
        client = _github_client(settings, args.repo)
        issue = _tracking_issue(settings, client, args.issue)
    except MissingConfigurationError as exc:
        logger.info("Sleep check skipped: %s", exc)
        return 0
    store = StateStore(client, event_log=event_log)
    report = SleepWakeController(store, issue, event_log=event_log).check_and_wake()
    _print_sleep_report(report)
    return 0


def _run_sleep(
    settings: RelaySettings,
    event_log: EventLog,
    args: argparse.Namespace,
    *,
    waking: bool,
) -> int:
    client = _github_client(settings, args.repo)
    issue = _tracking_issue(settings, client, args.issue)
    store = StateStore(client, event_log=event_log)
    controller = SleepWakeController(store, issue, event_log=event_log)
    if waking:
        result = controller.wake(args.reason)
    else:
        result = controller.enter_sleep(
            args.reason,
            args.prs,
            args.resume_session or settings.session_id or None,
        )
    if not result.ok:
        print(f"Failed to update sleep state on issue #{issue}: {result.error}", file=sys.stderr)
        return 1
    print(f"Orchestration on issue #{issue} is now {'awake' if waking else 'sleeping'}.")
    return 0


def _run_state(settings: RelaySettings, event_log: EventLog, args: argparse.Namespace) -> int:
    if args.state_command not in {"get", "set"}:
        print("usage: codex-relay state {get,set} ...", file=sys.stderr)
        return 1
    client = _github_client(settings, args.repo)
    issue = _tracking_issue(settings, client, args.issue)
    store = StateStore(client, event_log=event_log)

    if args.state_command == "get":
        record = store.get(issue, args.marker)
        if record is None:
            print(f"No readable {args.marker} record on issue #{issue}.", file=sys.stderr)
            return 1
        _print_json(record.model_dump())
        return 0

    try:
        data = json.loads(args.data)
    except ValueError as exc:
        print(f"--data is not valid JSON: {exc}", file=sys.stderr)
        return 1
    if not isinstance(data, dict):
        print("--data must be a JSON object", file=sys.stderr)
        return 1
    result = store.set(
        issue,
        args.marker,
        args.status,
        data,
        expected_updated_at=args.expected_updated_at,
    )
    _print_json(result.model_dump())
    return 0 if result.ok else 1


def _run_accounts(settings: RelaySettings) -> int:
    current = None
    try:
        current = CodexAccountCli(resolve_account_command(settings.account_cmd)).current()
    except MissingConfigurationError as exc:
        logger.info("%s", exc)
    pool = load_pool(current, env_file=settings.env_file)
    if not pool.accounts:
        print(
            "No accounts configured. Set CODEX_ACCOUNT_<NAME>_EMAILADDRESS in the "
            f"environment or in {settings.env_file}.",
            file=sys.stderr,
        )
        return 1

    ledger = ExhaustionLedger(settings.exhaustion_file, settings.cooldown_minutes)
    now = dt.datetime.now(dt.timezone.utc)
    print(f"Cooldown: {settings.cooldown_minutes} min")
    for account in pool.accounts:
        marker = "*" if account.is_current else " "
        remaining = ledger.cooldown_remaining(account.id, now)
        if remaining:
            status = f"cooling down ({int(remaining.total_seconds())}s left)"
        else:
            status = "available"
        print(f" {marker} {account.id:<40} {status}")
    if ledger.is_flapping(settings.flap_window_seconds, settings.flap_threshold, now):
        print("\nSwitching is currently suspended: too many switches in the flap window.")
    return 0


def _run_signals(settings: RelaySettings, args: argparse.Namespace) -> int:
    signals = SessionSignals(settings.state_dir, settings.session_id)
    if args.clear:
        removed = signals.clear()
        print(f"Removed {len(removed)} signal file(s).")
        return 0
    pending = signals.read_pending_switch()
    sleep_mode = signals.read_sleep_mode()
    payload: dict[str, Any] = {
        "session_id": settings.session_id or None,
        "pending_switch": pending.model_dump(by_alias=True) if pending else None,
        "sleep_mode": sleep_mode.model_dump() if sleep_mode else None,
    }
    if sleep_mode is not None and sleep_mode.resume_at is not None:
        payload["sleep_mode"]["resume_at"] = sleep_mode.resume_at.isoformat()
    _print_json(payload)
    return 0


def _run_events(event_log: EventLog, args: argparse.Namespace) -> int:
    if args.summary:
        rows = event_log.summary()
        if not rows:
            print("No events recorded.")
        for row in rows:
            print(f"{row['count']:>6}  {row['category']}")
        return 0
    entries = event_log.recent(args.limit, args.category)
    if not entries:
        print("No events recorded.")
    for entry in entries:
        print(
            f"{entry.get('timestamp', '')}  {entry.get('category', '')}/"
            f"{entry.get('name', '')}  {entry.get('event', '')}"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all commands) -----------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    _load_dotenv()

    if not args.command:
        parser.print_help()
        return 1

    settings = RelaySettings.from_env()
    event_log = EventLog(settings.log_dir, session_id=settings.session_id)

    # -- Hooks: never fail the host -------------------------------------------
    if args.command == "stop-hook":
        return _run_stop_hook(settings, event_log)
    if args.command == "ci-gate":
        return _run_ci_gate(settings, event_log, args)
    if args.command == "sleep-check":
        return _run_sleep_check(settings, event_log, args)

    # -- Operator commands ----------------------------------------------------
    try:
        if args.command in {"sleep", "wake"}:
            return _run_sleep(settings, event_log, args, waking=args.command == "wake")
        if args.command == "state":
            return _run_state(settings, event_log, args)
    except MissingConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if args.command == "accounts":
        return _run_accounts(settings)
    if args.command == "signals":
        return _run_signals(settings, args)
    if args.command == "events":
        return _run_events(event_log, args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
