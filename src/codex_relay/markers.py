"""Comment markers and the fenced JSON envelope stored between them.

A state comment looks like::

    <!-- ORCHESTRATION:SLEEP -->
    ```json
    {"schema_version": 1, "marker": "sleep_status", "status": "sleeping", ...}
    ```
    <!-- /ORCHESTRATION:SLEEP -->

    **Orchestration Sleeping**
    - **Reason:** ...

Only the fenced JSON between the delimiters is authoritative; the text after
the end delimiter is a summary for humans reading the issue.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from codex_relay.errors import StateParseError

SCHEMA_VERSION = 1
_LEGACY_ENVELOPE_KEYS = frozenset({"status", "updated_at", "data"})


@dataclass(frozen=True, slots=True)
class Marker:
    """A delimiter pair bounding one record type inside a comment body."""

    key: str
    start: str
    end: str
    title: str
    event_category: str


ORCHESTRATION_STATE = Marker(
    key="orchestration_state",
    start="<!-- ORCHESTRATION:STATE -->",
    end="<!-- /ORCHESTRATION:STATE -->",
    title="Orchestration Status",
    event_category="StateWrite",
)
WORKER_ASSIGNMENT = Marker(
    key="worker_assignment",
    start="<!-- WORKER:ASSIGNED -->",
    end="<!-- /WORKER:ASSIGNED -->",
    title="Worker Assignment",
    event_category="WorkerAssign",
)
HANDOVER_CONTEXT = Marker(
    key="handover_context",
    start="<!-- HANDOVER:START -->",
    end="<!-- HANDOVER:END -->",
    title="Handover Context",
    event_category="Handover",
)
SLEEP_STATUS = Marker(
    key="sleep_status",
    start="<!-- ORCHESTRATION:SLEEP -->",
    end="<!-- /ORCHESTRATION:SLEEP -->",
    title="Orchestration Sleep",
    event_category="Sleep",
)

MARKERS: dict[str, Marker] = {
    marker.key: marker
    for marker in (ORCHESTRATION_STATE, WORKER_ASSIGNMENT, HANDOVER_CONTEXT, SLEEP_STATUS)
}


def get_marker(key: str | Marker) -> Marker:
    """Resolve a marker by key; raises ``KeyError`` for unknown types."""
    if isinstance(key, Marker):
        return key
    try:
        return MARKERS[str(key).strip()]
    except KeyError:
        known = ", ".join(sorted(MARKERS))
        raise KeyError(f"unknown marker type {key!r} (known: {known})") from None


class Envelope(BaseModel):
    """Versioned payload stored inside a marker block."""

    schema_version: int = SCHEMA_VERSION
    marker: str
    status: str = ""
    updated_at: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


def render_comment(
    marker: Marker,
    *,
    status: str,
    data: dict[str, Any],
    updated_at: str,
    summary: str = "",
) -> str:
    """Build the canonical comment body for one record."""
    envelope = Envelope(marker=marker.key, status=status, updated_at=updated_at, data=data)
    lines = [
        marker.start,
        "```json",
        json.dumps(envelope.model_dump(), ensure_ascii=False, sort_keys=True),
        "```",
        marker.end,
    ]
    body = "\n".join(lines)
    if summary.strip():
        body = f"{body}\n\n{summary.strip()}"
    return body + "\n"


def contains_marker(body: str, marker: Marker) -> bool:
    return marker.start in (body or "")


def extract_block(body: str, marker: Marker) -> str | None:
    """Return the raw text between the marker delimiters, or ``None``."""
    text = body or ""
    start = text.find(marker.start)
    if start < 0:
        return None
    start += len(marker.start)
    end = text.find(marker.end, start)
    block = text[start:] if end < 0 else text[start:end]
    return block.strip("\r\n")


def _strip_fence(block: str) -> str:
    lines = block.strip().splitlines()
    if lines and lines[0].strip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


def parse_envelope(body: str, marker: Marker) -> Envelope:
    """Parse the marker block of *body*.

    Bodies written before envelopes were versioned carry bare JSON; those are
    mapped onto an envelope so older comments stay readable.
    """
    block = extract_block(body, marker)
    if block is None:
        raise StateParseError(f"comment has no {marker.key} block")
    raw = _strip_fence(block)
    if not raw:
        raise StateParseError(f"{marker.key} block is empty")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateParseError(f"{marker.key} block is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StateParseError(f"{marker.key} block is not a JSON object")

    if "schema_version" in parsed:
        try:
            return Envelope.model_validate(parsed)
        except ValidationError as exc:
            raise StateParseError(f"{marker.key} envelope is malformed: {exc}") from exc

    data = parsed.get("data")
    if isinstance(data, dict) and set(parsed) <= _LEGACY_ENVELOPE_KEYS:
        payload = data
    else:
        payload = parsed
    updated_at = (
        parsed.get("updated_at")
        or parsed.get("since")
        or parsed.get("woke_at")
        or parsed.get("assigned_at")
        or parsed.get("cleared_at")
        or ""
    )
    return Envelope(
        schema_version=0,
        marker=marker.key,
        status=str(parsed.get("status") or ""),
        updated_at=str(updated_at),
        data=payload,
    )
