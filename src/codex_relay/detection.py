"""Usage-limit detection over the tail of a session transcript.

Lines written by the relay itself are dropped before matching, otherwise the
relay's own "plan limit" announcements would re-trigger a switch on the
next stop. Every line the relay prints carries :data:`RELAY_TAG`; the legacy
phrase list covers transcripts written before the tag existed.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

from codex_relay.file_io import read_tail_lines

RELAY_TAG = "[codex-relay]"
"""Sentinel carried by every line the relay emits."""

TRANSCRIPT_TAIL_LINES = 50

_RELAY_TAG_RE = re.compile(r"\[\s*codex[\s_-]*relay\s*\]", re.IGNORECASE)

TRIGGER_PATTERNS: tuple[str, ...] = (
    r"openai.*rate.?limit",
    r"api.*rate.?limit",
    r"rate.?limit",
    r"quota",
    r"usage.?limit",
    r"plan.?limit",
    r"subscription.*limit",
    r"messages?.?limit.*exceeded",
    r"exceeded.*messages?.?limit",
    r"you.?have.?reached.*limit",
    r"you.?ve.?hit.*limit",
    r"hit.?your.?limit",
    r"resets.*\(UTC\)",
    r"usage.?cap",
    r"insufficient_quota",
    r"billing",
    r"capacity",
    r"try.?again.?later",
    r"api.*429",
    r"429.*rate",
    r"error.*429",
    r"api.*503",
    r"503.*overload",
    r"overload",
    r"api.*throttl",
    r"request.*throttl",
)

SELF_OUTPUT_MARKERS: tuple[str, ...] = (
    "Plan limit reached on",
    "Plan limit on",
    "Switching to account:",
    "codex-account switch",
    "All accounts exhausted",
    "Entering SLEEP mode",
    "entering cooldown",
    "Codex must restart",
)

_TRIGGER_RE = re.compile("|".join(f"(?:{p})" for p in TRIGGER_PATTERNS), re.IGNORECASE)
_SELF_OUTPUT_RE = re.compile(
    "|".join(re.escape(marker) for marker in SELF_OUTPUT_MARKERS), re.IGNORECASE
)


def tag_message(text: str) -> str:
    """Prefix every line of *text* with the relay sentinel."""
    lines = str(text or "").splitlines() or [""]
    return "\n".join(f"{RELAY_TAG} {line}".rstrip() for line in lines)


def is_self_output(line: str) -> bool:
    """True when *line* was produced by the relay and must not be matched."""
    if not line:
        return False
    return bool(_RELAY_TAG_RE.search(line) or _SELF_OUTPUT_RE.search(line))


def find_exhaustion_signal(lines: Iterable[str]) -> str | None:
    """Return the first non-self line that matches a trigger pattern."""
    for line in lines:
        if not line or is_self_output(line):
            continue
        if _TRIGGER_RE.search(line):
            return line
    return None


def detect_exhaustion(lines: Iterable[str]) -> bool:
    return find_exhaustion_signal(lines) is not None


def scan_transcript(path: str | Path, *, tail_lines: int = TRANSCRIPT_TAIL_LINES) -> str | None:
    """Trigger line from the last *tail_lines* of the transcript, if any."""
    return find_exhaustion_signal(read_tail_lines(Path(path), tail_lines))
