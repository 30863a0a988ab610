"""Tests for CLI entrypoint dispatch and command handlers."""

from __future__ import annotations

import io
import json
import os
from pathlib import Path

import pytest

import codex_relay.__main__ as main_module
import codex_relay.failover as failover
from codex_relay.event_log import EventLog
from codex_relay.signals import PendingSwitchSignal, SessionSignals

pytestmark = pytest.mark.unit

_ENV_KEYS = (
    "CODEX_HOME",
    "CODEX_HOOK_LOGS",
    "CODEX_SESSION_ID",
    "CODEX_AUTONOMOUS_SESSION_ID",
    "CODEX_ACCOUNT_CMD",
    "GITHUB_REPO",
    "TRACKING_ISSUE",
    "ORCHESTRATION_ISSUE",
)


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CODEX_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CODEX_HOOK_LOGS", str(tmp_path / "logs"))
    monkeypatch.setenv("CODEX_SESSION_ID", "s1")
    monkeypatch.setattr(main_module, "detect_github_repo", lambda *_a, **_k: "")
    return tmp_path


def test_main_entrypoint_source_is_ascii_safe() -> None:
    source_text = Path(main_module.__file__).read_text(encoding="utf-8")
    assert source_text.isascii()
    assert not any("\u0080" <= ch <= "\u009f" for ch in source_text)


def test_main_prints_help_without_command(capsys, cli_env: Path) -> None:
    rc = main_module.main([])
    captured = capsys.readouterr()
    assert rc == 1
    assert "stop-hook" in captured.out


def test_main_dispatches_subcommands(monkeypatch, cli_env: Path) -> None:
    calls: dict[str, object] = {}

    def fake_sleep(_settings, _event_log, args, *, waking):
        calls["waking" if waking else "sleeping"] = args.reason
        return 21

    def fake_state(_settings, _event_log, args):
        calls["state"] = (args.state_command, args.marker, args.issue)
        return 22

    def fake_gate(_settings, _event_log, args):
        calls["gate_repo"] = args.repo
        return 23

    monkeypatch.setattr(main_module, "_run_sleep", fake_sleep)
    monkeypatch.setattr(main_module, "_run_state", fake_state)
    monkeypatch.setattr(main_module, "_run_ci_gate", fake_gate)

    assert main_module.main(["sleep", "--reason", "ci", "--prs", "1,2"]) == 21
    assert main_module.main(["wake"]) == 21
    assert main_module.main(["state", "get", "sleep_status", "--issue", "9"]) == 22
    assert main_module.main(["ci-gate", "--repo", "acme/widgets"]) == 23

    assert calls == {
        "sleeping": "ci",
        "waking": "manual",
        "state": ("get", "sleep_status", 9),
        "gate_repo": "acme/widgets",
    }


def test_stop_hook_without_transcript_exits_zero(monkeypatch, cli_env: Path) -> None:
    monkeypatch.setenv("CODEX_ACCOUNT_CMD", str(cli_env / "missing-account-tool"))
    monkeypatch.setattr(main_module.sys, "stdin", io.StringIO('{"stop_hook_active": false}'))

    assert main_module.main(["stop-hook"]) == 0

    events = EventLog(cli_env / "logs").recent(category="Stop")
    assert [e["event"] for e in events] == ["started", "completed"]


def test_ci_gate_without_repository_allows_stop(cli_env: Path) -> None:
    assert main_module.main(["ci-gate"]) == 0


def test_sleep_check_without_repository_is_silent(cli_env: Path) -> None:
    assert main_module.main(["sleep-check"]) == 0


def test_state_without_repository_fails(capsys, cli_env: Path) -> None:
    rc = main_module.main(["state", "get", "sleep_status"])
    captured = capsys.readouterr()
    assert rc == 1
    assert "GitHub repository unknown" in captured.err


def test_state_without_subcommand_fails(capsys, cli_env: Path) -> None:
    assert main_module.main(["state", "--repo", "acme/widgets"]) == 1
    assert "usage: codex-relay state" in capsys.readouterr().err


def test_events_lists_recent_entries(capsys, cli_env: Path) -> None:
    log = EventLog(cli_env / "logs", session_id="s1")
    log.record("Stop", "ci-gate", "allow")
    log.record("Sleep", "github-state", "sleeping")

    assert main_module.main(["events", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "Stop/ci-gate  allow" in out
    assert "Sleep/github-state  sleeping" in out

    assert main_module.main(["events", "--summary"]) == 0
    assert "1  Stop" in capsys.readouterr().out


def test_events_on_empty_log(capsys, cli_env: Path) -> None:
    assert main_module.main(["events"]) == 0
    assert "No events recorded." in capsys.readouterr().out


def test_signals_show_and_clear(capsys, cli_env: Path) -> None:
    SessionSignals(cli_env / "home", "s1").write_pending_switch(
        PendingSwitchSignal(from_account="a@x.io", to_account="b@x.io", timestamp="t")
    )

    assert main_module.main(["signals"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["session_id"] == "s1"
    assert payload["pending_switch"]["to"] == "b@x.io"
    assert payload["sleep_mode"] is None

    assert main_module.main(["signals", "--clear"]) == 0
    assert "Removed 1 signal file(s)." in capsys.readouterr().out
    assert SessionSignals(cli_env / "home", "s1").read_pending_switch() is None


class _StubAccountCli:
    def __init__(self, command: str, **_kwargs) -> None:
        self.command = command

    def current(self) -> str:
        return "a@x.io"

    def switch(self, account_id: str) -> bool:
        return True


class _NoHostLocator:
    def locate(self, binary_name: str):
        return None


def test_stop_hook_survives_undecodable_account_env_file(monkeypatch, cli_env: Path) -> None:
    for key in list(os.environ):
        if key.startswith("CODEX_ACCOUNT_"):
            monkeypatch.delenv(key)
    env_file = cli_env / "accounts.env"
    env_file.write_bytes(b"CODEX_ACCOUNT_A_EMAILADDRESS=a@x.io\nNOTE=caf\xe9\n")
    transcript = cli_env / "transcript.jsonl"
    limit_line = "Error: 429 Too Many Requests - rate limit exceeded, try again later"
    transcript.write_text(limit_line + "\n", encoding="utf-8")
    monkeypatch.setenv("CODEX_ENV_FILE", str(env_file))
    monkeypatch.setattr(failover, "resolve_account_command", lambda _configured: "codex-account")
    monkeypatch.setattr(failover, "CodexAccountCli", _StubAccountCli)
    monkeypatch.setattr(failover, "PsutilProcessLocator", _NoHostLocator)
    payload = json.dumps({"transcript_path": str(transcript), "session_id": "s1"})
    monkeypatch.setattr(main_module.sys, "stdin", io.StringIO(payload))

    assert main_module.main(["stop-hook"]) == 0

    sleep_mode = SessionSignals(cli_env / "home", "s1").read_sleep_mode()
    assert sleep_mode is not None
    assert sleep_mode.exhausted_account == "a@x.io"


class _UndecodableStdin:
    def read(self) -> str:
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")


def test_stop_hook_survives_undecodable_stdin(monkeypatch, cli_env: Path) -> None:
    monkeypatch.setattr(main_module.sys, "stdin", _UndecodableStdin())

    assert main_module.main(["stop-hook"]) == 0
