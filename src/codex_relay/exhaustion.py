"""Local ledger of exhausted accounts and recent switches.

Layout of ``$CODEX_HOME/.account-exhaustion.json``::

    {
      "exhausted": {"a@example.com": "2026-01-01T00:00:00Z"},
      "switches": [{"from": "a@example.com", "to": "b@example.com", "timestamp": 1767225600}],
      "cooldown_minutes": 5
    }

Several hook processes may stop at once, so every read-modify-write holds
an exclusive lock on a sibling ``.lock`` file and commits with an atomic
rename. A missing, unreadable or corrupt ledger reads as empty.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from codex_relay.config import DEFAULT_COOLDOWN_MINUTES
from codex_relay.event_log import utc_timestamp
from codex_relay.file_io import atomic_write_text, interprocess_lock

logger = logging.getLogger(__name__)

MAX_SWITCH_HISTORY = 20
LEDGER_FILE_MODE = 0o600
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SwitchRecord(BaseModel):
    model_config = {"populate_by_name": True}

    from_account: str = Field(default="", alias="from")
    to_account: str = Field(default="", alias="to")
    timestamp: int = 0


class LedgerData(BaseModel):
    exhausted: dict[str, str] = Field(default_factory=dict)
    switches: list[SwitchRecord] = Field(default_factory=list)
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES


def _parse_timestamp(value: str) -> dt.datetime | None:
    try:
        parsed = dt.datetime.strptime(value, _TIMESTAMP_FORMAT)
    except (TypeError, ValueError):
        try:
            parsed = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


class ExhaustionLedger:
    """Cooldown and flap bookkeeping for the account pool."""

    def __init__(self, path: Path, cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES) -> None:
        self.path = Path(path)
        self.cooldown_minutes = int(cooldown_minutes)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @property
    def cooldown(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.cooldown_minutes)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _read(self) -> LedgerData:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LedgerData(cooldown_minutes=self.cooldown_minutes)
        except OSError as exc:
            logger.warning("Could not read exhaustion ledger %s: %s", self.path, exc)
            return LedgerData(cooldown_minutes=self.cooldown_minutes)
        try:
            payload = json.loads(raw) if raw.strip() else {}
            if not isinstance(payload, dict):
                raise ValueError("ledger root is not an object")
            return LedgerData.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("Treating corrupt exhaustion ledger %s as empty: %s", self.path, exc)
            return LedgerData(cooldown_minutes=self.cooldown_minutes)

    def _write(self, data: LedgerData) -> None:
        data.cooldown_minutes = self.cooldown_minutes
        content = json.dumps(data.model_dump(by_alias=True), indent=2) + "\n"
        atomic_write_text(self.path, content, mode=LEDGER_FILE_MODE)

    def snapshot(self) -> LedgerData:
        with interprocess_lock(self.lock_path):
            return self._read()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mark_exhausted(self, account: str, now: dt.datetime) -> None:
        with interprocess_lock(self.lock_path):
            data = self._read()
            data.exhausted[account] = utc_timestamp(now)
            self._write(data)
        logger.info("Marked %s exhausted at %s", account, utc_timestamp(now))

    def record_switch(self, from_account: str, to_account: str, now: dt.datetime) -> None:
        with interprocess_lock(self.lock_path):
            data = self._read()
            data.switches.append(
                SwitchRecord(
                    from_account=from_account,
                    to_account=to_account,
                    timestamp=int(now.timestamp()),
                )
            )
            data.switches = data.switches[-MAX_SWITCH_HISTORY:]
            self._write(data)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exhausted_at(self, account: str) -> dt.datetime | None:
        value = self.snapshot().exhausted.get(account)
        return _parse_timestamp(value) if value else None

    def _cooled_down(self, data: LedgerData, account: str, now: dt.datetime) -> bool:
        value = data.exhausted.get(account)
        if not value:
            return True
        exhausted = _parse_timestamp(value)
        if exhausted is None:
            return True
        return now - exhausted >= self.cooldown

    def is_cooled_down(self, account: str, now: dt.datetime) -> bool:
        """True when *account* was never exhausted or its cooldown has elapsed."""
        return self._cooled_down(self.snapshot(), account, now)

    def cooldown_remaining(self, account: str, now: dt.datetime) -> dt.timedelta:
        exhausted = self.exhausted_at(account)
        if exhausted is None:
            return dt.timedelta(0)
        return max(dt.timedelta(0), exhausted + self.cooldown - now)

    def is_flapping(self, window_seconds: int, threshold: int, now: dt.datetime) -> bool:
        """True when at least *threshold* switches happened within the last *window_seconds*."""
        cutoff = int(now.timestamp()) - int(window_seconds)
        recent = [s for s in self.snapshot().switches if s.timestamp > cutoff]
        return len(recent) >= int(threshold)

    def get_next_available(
        self,
        current: str | None,
        pool: Iterable[str],
        now: dt.datetime,
    ) -> str | None:
        """Next cooled-down account after *current*, walking the pool as a ring.

        When *current* is not in the pool the walk starts at the pool head.
        """
        ids = [str(account) for account in pool]
        if not ids:
            return None
        data = self.snapshot()
        start = ids.index(current) + 1 if current in ids else 0
        for offset in range(len(ids)):
            candidate = ids[(start + offset) % len(ids)]
            if candidate == current:
                continue
            if self._cooled_down(data, candidate, now):
                return candidate
        return None

    def as_dict(self) -> dict[str, Any]:
        return self.snapshot().model_dump(by_alias=True)
