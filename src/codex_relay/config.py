"""Environment-driven settings for the relay hooks and CLI."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 5
DEFAULT_FLAP_THRESHOLD = 3
DEFAULT_FLAP_WINDOW_SECONDS = 60
DEFAULT_HOST_BINARY = "codex"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GITHUB_TIMEOUT_SECONDS = 15.0
TRACKING_ISSUE_LABEL = "orchestration"

_TOKEN_ENV_KEYS = ("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN", "GH_TOKEN")


def _clean(value: object) -> str:
    return str(value or "").strip()


def _env_int(environ: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = _clean(environ.get(key))
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", key, raw, default)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range %s=%r; using %s", key, raw, default)
        return default
    return value


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _clean(environ.get(key))
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", key, raw, default)
        return default
    return value if value > 0 else default


def _env_issue(environ: Mapping[str, str]) -> int | None:
    for key in ("TRACKING_ISSUE", "ORCHESTRATION_ISSUE"):
        raw = _clean(environ.get(key)).lstrip("#")
        if not raw:
            continue
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-numeric %s=%r", key, raw)
    return None


class RelaySettings(BaseModel):
    """Resolved configuration for one hook or CLI invocation."""

    codex_home: Path = Field(default_factory=lambda: Path.home() / ".codex")
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES
    flap_threshold: int = DEFAULT_FLAP_THRESHOLD
    flap_window_seconds: int = DEFAULT_FLAP_WINDOW_SECONDS
    session_id: str = ""
    account_cmd: str = ""
    env_file: Path = Path(".env")
    host_binary: str = DEFAULT_HOST_BINARY
    github_repo: str = ""
    github_token: str = ""
    github_api_url: str = DEFAULT_GITHUB_API_URL
    github_timeout_seconds: float = DEFAULT_GITHUB_TIMEOUT_SECONDS
    tracking_issue: int | None = None
    log_dir: Path = Path(".codex") / "logs"

    @property
    def exhaustion_file(self) -> Path:
        return self.codex_home / ".account-exhaustion.json"

    @property
    def state_dir(self) -> Path:
        return self.codex_home

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelaySettings:
        """Build settings from *environ* (``os.environ`` by default)."""
        env = os.environ if environ is None else environ

        codex_home_raw = _clean(env.get("CODEX_HOME"))
        codex_home = (
            Path(codex_home_raw).expanduser() if codex_home_raw else Path.home() / ".codex"
        )

        log_dir_raw = _clean(env.get("CODEX_HOOK_LOGS"))
        if log_dir_raw:
            log_dir = Path(log_dir_raw).expanduser()
        else:
            project_root = _clean(env.get("CODEX_PROJECT_ROOT")) or "."
            log_dir = Path(project_root).expanduser() / ".codex" / "logs"

        token = ""
        for key in _TOKEN_ENV_KEYS:
            token = _clean(env.get(key))
            if token:
                break

        return cls(
            codex_home=codex_home,
            cooldown_minutes=_env_int(
                env, "CODEX_ACCOUNT_COOLDOWN_MINUTES", DEFAULT_COOLDOWN_MINUTES
            ),
            flap_threshold=_env_int(
                env, "CODEX_ACCOUNT_FLAP_THRESHOLD", DEFAULT_FLAP_THRESHOLD, minimum=1
            ),
            flap_window_seconds=_env_int(
                env, "CODEX_ACCOUNT_FLAP_WINDOW", DEFAULT_FLAP_WINDOW_SECONDS, minimum=1
            ),
            session_id=_clean(env.get("CODEX_AUTONOMOUS_SESSION_ID"))
            or _clean(env.get("CODEX_SESSION_ID")),
            account_cmd=_clean(env.get("CODEX_ACCOUNT_CMD")),
            env_file=Path(_clean(env.get("CODEX_ENV_FILE")) or ".env").expanduser(),
            host_binary=_clean(env.get("CODEX_HOST_BINARY")) or DEFAULT_HOST_BINARY,
            github_repo=_clean(env.get("GITHUB_REPO")),
            github_token=token,
            github_api_url=(
                _clean(env.get("GITHUB_API_URL")) or DEFAULT_GITHUB_API_URL
            ).rstrip("/"),
            github_timeout_seconds=_env_float(
                env, "GITHUB_TIMEOUT_SECONDS", DEFAULT_GITHUB_TIMEOUT_SECONDS
            ),
            tracking_issue=_env_issue(env),
            log_dir=log_dir,
        )
