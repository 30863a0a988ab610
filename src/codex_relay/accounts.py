"""Account pool discovery and the external ``codex-account`` switcher."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, Field

from codex_relay.errors import MissingConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_BINARY = "codex-account"
ACCOUNT_COMMAND_TIMEOUT_SECONDS = 30

_ACCOUNT_KEY_RE = re.compile(r"^CODEX_ACCOUNT_(?P<name>[A-Za-z0-9_]+)_EMAILADDRESS$")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class Account(BaseModel):
    """One credential set, addressed by its e-mail id."""

    id: str
    label: str = ""
    is_current: bool = False


class AccountPool(BaseModel):
    """Accounts in rotation order plus the one currently active."""

    accounts: list[Account] = Field(default_factory=list)
    current: str | None = None

    @property
    def ids(self) -> list[str]:
        return [account.id for account in self.accounts]

    def __len__(self) -> int:
        return len(self.accounts)


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def first_email(text: str) -> str | None:
    match = _EMAIL_RE.search(strip_ansi(text))
    return match.group(0) if match else None


def _accounts_from_mapping(values: Mapping[str, str | None]) -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    for key in sorted(values):
        if not _ACCOUNT_KEY_RE.match(key):
            continue
        email = str(values.get(key) or "").strip().strip("'\"")
        if email:
            found.append((key, email))
    return found


def discover_accounts(
    environ: Mapping[str, str] | None = None,
    env_file: Path | None = None,
) -> list[tuple[str, str]]:
    """``(label, email)`` pairs from ``CODEX_ACCOUNT_<X>_EMAILADDRESS`` keys.

    The process environment wins; the env file is only consulted when the
    environment holds no account keys at all. Order follows the key name and
    duplicate addresses keep their first label.
    """
    env = os.environ if environ is None else environ
    found = _accounts_from_mapping(env)
    if not found and env_file is not None and env_file.is_file():
        try:
            found = _accounts_from_mapping(dotenv_values(env_file))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read accounts from %s: %s", env_file, exc)

    seen: set[str] = set()
    unique: list[tuple[str, str]] = []
    for label, email in found:
        if email in seen:
            continue
        seen.add(email)
        unique.append((label, email))
    return unique


def resolve_account_command(configured: str = "") -> str:
    """Configured switcher when executable, else ``codex-account`` from PATH."""
    candidate = os.path.expandvars(os.path.expanduser(str(configured or "").strip()))
    if candidate:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
        logger.warning(
            "CODEX_ACCOUNT_CMD=%r is not executable; trying %s",
            configured,
            DEFAULT_ACCOUNT_BINARY,
        )
    resolved = shutil.which(DEFAULT_ACCOUNT_BINARY)
    if resolved:
        return resolved
    raise MissingConfigurationError(
        f"No account switcher found: set CODEX_ACCOUNT_CMD or install {DEFAULT_ACCOUNT_BINARY}"
    )


class CodexAccountCli:
    """Thin wrapper over ``codex-account current`` / ``codex-account switch``."""

    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: float = ACCOUNT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.command, *args],
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
            check=False,
        )

    def current(self) -> str | None:
        """E-mail of the active account, or ``None`` when it cannot be read."""
        try:
            result = self._run("current")
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not query the current account: %s", exc)
            return None
        return first_email(f"{result.stdout}\n{result.stderr}")

    def switch(self, account_id: str) -> bool:
        try:
            result = self._run("switch", account_id)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Account switch to %s failed: %s", account_id, exc)
            return False
        if result.returncode != 0:
            logger.warning(
                "Account switch to %s exited with %s: %s",
                account_id,
                result.returncode,
                (result.stderr or result.stdout).strip(),
            )
            return False
        return True


def load_pool(
    current: str | None,
    environ: Mapping[str, str] | None = None,
    env_file: Path | None = None,
) -> AccountPool:
    accounts = [
        Account(id=email, label=label, is_current=(email == current))
        for label, email in discover_accounts(environ, env_file)
    ]
    return AccountPool(accounts=accounts, current=current)
