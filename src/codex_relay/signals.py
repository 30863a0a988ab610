"""Session-scoped signal files read by the autonomous supervisor.

``.pending-account-switch[.<session>]`` tells the supervisor to relaunch the
host with new credentials; ``.account-sleep-mode[.<session>]`` tells it to
wait out the cooldown first. Files without a session suffix are the global
variants used outside autonomous runs.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError

from codex_relay.file_io import atomic_write_text

logger = logging.getLogger(__name__)

PENDING_SWITCH_FILE = ".pending-account-switch"
SLEEP_MODE_FILE = ".account-sleep-mode"

_SignalT = TypeVar("_SignalT", bound=BaseModel)


def _parse_utc(value: str) -> dt.datetime | None:
    try:
        parsed = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


class PendingSwitchSignal(BaseModel):
    model_config = {"populate_by_name": True}

    from_account: str = Field(alias="from")
    to_account: str = Field(alias="to")
    timestamp: str
    reason: Literal["plan_limit"] = "plan_limit"


class SleepModeSignal(BaseModel):
    exhausted_account: str
    timestamp: str
    cooldown_minutes: int
    reason: Literal["all_accounts_exhausted"] = "all_accounts_exhausted"

    @property
    def resume_at(self) -> dt.datetime | None:
        started = _parse_utc(self.timestamp)
        if started is None:
            return None
        return started + dt.timedelta(minutes=self.cooldown_minutes)


def session_suffix(session_id: str | None) -> str:
    clean = str(session_id or "").strip()
    return f".{clean}" if clean else ""


class SessionSignals:
    """Read, write and clear the signal files of one session."""

    def __init__(self, state_dir: Path, session_id: str | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.session_id = str(session_id or "").strip()

    @property
    def pending_switch_path(self) -> Path:
        return self.state_dir / f"{PENDING_SWITCH_FILE}{session_suffix(self.session_id)}"

    @property
    def sleep_mode_path(self) -> Path:
        return self.state_dir / f"{SLEEP_MODE_FILE}{session_suffix(self.session_id)}"

    def _write(self, path: Path, signal: BaseModel) -> Path:
        atomic_write_text(path, json.dumps(signal.model_dump(by_alias=True), indent=2) + "\n")
        return path

    def _read(self, path: Path, model: type[_SignalT]) -> _SignalT | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable signal file %s: %s", path, exc)
            return None
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed signal file %s: %s", path, exc)
            return None

    def write_pending_switch(self, signal: PendingSwitchSignal) -> Path:
        return self._write(self.pending_switch_path, signal)

    def read_pending_switch(self) -> PendingSwitchSignal | None:
        return self._read(self.pending_switch_path, PendingSwitchSignal)

    def write_sleep_mode(self, signal: SleepModeSignal) -> Path:
        return self._write(self.sleep_mode_path, signal)

    def read_sleep_mode(self) -> SleepModeSignal | None:
        return self._read(self.sleep_mode_path, SleepModeSignal)

    def clear(self) -> list[Path]:
        """Remove both signal files; return the ones that existed."""
        removed: list[Path] = []
        for path in (self.pending_switch_path, self.sleep_mode_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path)
        return removed
