"""Tests for environment-driven relay settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from codex_relay.config import (
    DEFAULT_COOLDOWN_MINUTES,
    DEFAULT_GITHUB_API_URL,
    RelaySettings,
)

pytestmark = pytest.mark.unit


def test_defaults_from_empty_environment() -> None:
    settings = RelaySettings.from_env({})

    assert settings.codex_home == Path.home() / ".codex"
    assert settings.cooldown_minutes == DEFAULT_COOLDOWN_MINUTES
    assert settings.flap_threshold == 3
    assert settings.flap_window_seconds == 60
    assert settings.host_binary == "codex"
    assert settings.github_api_url == DEFAULT_GITHUB_API_URL
    assert settings.tracking_issue is None
    assert settings.log_dir == Path(".") / ".codex" / "logs"
    assert settings.exhaustion_file == settings.codex_home / ".account-exhaustion.json"


def test_values_are_read_from_environment(tmp_path: Path) -> None:
    settings = RelaySettings.from_env(
        {
            "CODEX_HOME": str(tmp_path / "home"),
            "CODEX_ACCOUNT_COOLDOWN_MINUTES": "15",
            "CODEX_ACCOUNT_FLAP_THRESHOLD": "5",
            "CODEX_ACCOUNT_FLAP_WINDOW": "120",
            "CODEX_SESSION_ID": "sess-9",
            "CODEX_HOST_BINARY": "codex-dev",
            "GITHUB_REPO": " acme/widgets ",
            "GITHUB_API_URL": "https://ghe.example.test/api/v3/",
            "TRACKING_ISSUE": "#42",
            "CODEX_PROJECT_ROOT": str(tmp_path / "project"),
        }
    )

    assert settings.codex_home == tmp_path / "home"
    assert settings.state_dir == tmp_path / "home"
    assert settings.cooldown_minutes == 15
    assert settings.flap_threshold == 5
    assert settings.flap_window_seconds == 120
    assert settings.session_id == "sess-9"
    assert settings.host_binary == "codex-dev"
    assert settings.github_repo == "acme/widgets"
    assert settings.github_api_url == "https://ghe.example.test/api/v3"
    assert settings.tracking_issue == 42
    assert settings.log_dir == tmp_path / "project" / ".codex" / "logs"


def test_invalid_numbers_fall_back_to_defaults() -> None:
    settings = RelaySettings.from_env(
        {
            "CODEX_ACCOUNT_COOLDOWN_MINUTES": "soon",
            "CODEX_ACCOUNT_FLAP_THRESHOLD": "0",
            "CODEX_ACCOUNT_FLAP_WINDOW": "-5",
            "GITHUB_TIMEOUT_SECONDS": "fast",
            "TRACKING_ISSUE": "abc",
        }
    )

    assert settings.cooldown_minutes == DEFAULT_COOLDOWN_MINUTES
    assert settings.flap_threshold == 3
    assert settings.flap_window_seconds == 60
    assert settings.github_timeout_seconds == 15.0
    assert settings.tracking_issue is None


def test_zero_cooldown_is_allowed() -> None:
    assert RelaySettings.from_env({"CODEX_ACCOUNT_COOLDOWN_MINUTES": "0"}).cooldown_minutes == 0


def test_token_precedence_and_session_precedence() -> None:
    settings = RelaySettings.from_env(
        {
            "GH_TOKEN": "gh",
            "GITHUB_PERSONAL_ACCESS_TOKEN": "pat",
            "CODEX_SESSION_ID": "plain",
            "CODEX_AUTONOMOUS_SESSION_ID": "autonomous",
        }
    )

    assert settings.github_token == "pat"
    assert settings.session_id == "autonomous"


def test_hook_log_dir_override(tmp_path: Path) -> None:
    settings = RelaySettings.from_env(
        {"CODEX_HOOK_LOGS": str(tmp_path / "hooks"), "CODEX_PROJECT_ROOT": "/ignored"}
    )

    assert settings.log_dir == tmp_path / "hooks"


def test_orchestration_issue_is_a_fallback() -> None:
    assert RelaySettings.from_env({"ORCHESTRATION_ISSUE": "7"}).tracking_issue == 7
