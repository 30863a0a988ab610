"""Durable orchestration state kept in GitHub issue comments.

Each record type owns one marker. ``set`` patches the latest comment that
carries the marker, or creates one, so an issue holds at most one live
comment per marker. ``get`` never raises: a failed fetch or a malformed
block reads as ``None`` ("unknown").

Writes are last-write-wins. A caller that needs to detect a concurrent
writer passes ``expected_updated_at``; the write is then refused when the
live record moved on since the caller read it.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from codex_relay.config import TRACKING_ISSUE_LABEL
from codex_relay.errors import ExternalCallError, StateParseError
from codex_relay.event_log import EventLog, utc_timestamp
from codex_relay.markers import (
    HANDOVER_CONTEXT,
    ORCHESTRATION_STATE,
    WORKER_ASSIGNMENT,
    Marker,
    contains_marker,
    extract_block,
    get_marker,
    parse_envelope,
    render_comment,
)

logger = logging.getLogger(__name__)

OrchestrationStatus = Literal["running", "sleeping", "stopped", "error"]
Clock = Callable[[], dt.datetime]


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class StateRecord(BaseModel):
    """One marker record read back from an issue."""

    marker_type: str
    issue_id: int
    status: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    updated_at: str = ""
    comment_id: int | None = None
    schema_version: int = 1


class WriteResult(BaseModel):
    """Outcome of a ``set`` call."""

    ok: bool = False
    action: Literal["created", "updated", "conflict", "failed"] = "failed"
    comment_id: int | None = None
    updated_at: str = ""
    error: str = ""


class WorkerAssignment(BaseModel):
    assigned: bool = False
    worker_id: str = ""
    assigned_at: str = ""
    cleared_at: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class HandoverContext(BaseModel):
    content: str = ""
    previous_session: str = ""
    created_at: str = ""


class StateStore:
    """Read/write marker records on the issues of one repository.

    *client* needs ``list_issue_comments``, ``create_comment`` and
    ``update_comment`` (see :class:`codex_relay.github_client.GitHubClient`).
    """

    def __init__(
        self,
        client: Any,
        *,
        event_log: EventLog | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.client = client
        self.event_log = event_log
        self._clock = clock

    def _record_event(self, category: str, event: str, data: dict[str, Any]) -> None:
        if self.event_log is not None:
            self.event_log.record(category, "github-state", event, data)

    def _find_latest(self, issue_id: int, marker: Marker) -> dict[str, Any] | None:
        comments = self.client.list_issue_comments(issue_id)
        latest = None
        for comment in comments:
            if contains_marker(str(comment.get("body") or ""), marker):
                latest = comment
        return latest

    # ------------------------------------------------------------------
    # Generic records
    # ------------------------------------------------------------------

    def get(self, issue_id: int, marker_type: str | Marker) -> StateRecord | None:
        """Latest record for *marker_type* on *issue_id*, or ``None`` when unknown."""
        marker = get_marker(marker_type)
        try:
            comment = self._find_latest(issue_id, marker)
        except ExternalCallError as exc:
            logger.warning("Could not read %s from issue #%s: %s", marker.key, issue_id, exc)
            return None
        if comment is None:
            return None
        try:
            envelope = parse_envelope(str(comment.get("body") or ""), marker)
        except StateParseError as exc:
            logger.warning(
                "Ignoring unreadable %s comment %s on issue #%s: %s",
                marker.key,
                comment.get("id"),
                issue_id,
                exc,
            )
            return None
        comment_id = comment.get("id")
        return StateRecord(
            marker_type=marker.key,
            issue_id=int(issue_id),
            status=envelope.status,
            payload=envelope.data,
            updated_at=envelope.updated_at,
            comment_id=comment_id if isinstance(comment_id, int) else None,
            schema_version=envelope.schema_version,
        )

    def set(
        self,
        issue_id: int,
        marker_type: str | Marker,
        status: str,
        payload: dict[str, Any] | None = None,
        *,
        summary: str | None = None,
        expected_updated_at: str | None = None,
    ) -> WriteResult:
        """Create or overwrite the record for *marker_type* on *issue_id*."""
        marker = get_marker(marker_type)
        data = dict(payload or {})
        updated_at = utc_timestamp(self._clock())
        if summary is None:
            summary = f"**{marker.title}:** {status}\n**Updated:** {updated_at}"
        body = render_comment(
            marker,
            status=status,
            data=data,
            updated_at=updated_at,
            summary=summary,
        )
        event_data = {"issue": str(issue_id), "marker": marker.key, "status": status}

        try:
            existing = self._find_latest(issue_id, marker)
            if expected_updated_at is not None:
                current = ""
                if existing is not None:
                    try:
                        current = parse_envelope(str(existing.get("body") or ""), marker).updated_at
                    except StateParseError:
                        current = ""
                if current != expected_updated_at:
                    logger.warning(
                        "Refusing %s write on issue #%s: expected updated_at %r, found %r",
                        marker.key,
                        issue_id,
                        expected_updated_at,
                        current,
                    )
                    self._record_event(
                        marker.event_category,
                        "conflict",
                        {**event_data, "expected": expected_updated_at, "found": current},
                    )
                    return WriteResult(action="conflict", error="record changed since it was read")

            if existing is not None and isinstance(existing.get("id"), int):
                response = self.client.update_comment(existing["id"], body)
                action: Literal["created", "updated"] = "updated"
                comment_id = existing["id"]
            else:
                response = self.client.create_comment(issue_id, body)
                action = "created"
                comment_id = response.get("id") if isinstance(response, dict) else None
        except ExternalCallError as exc:
            logger.warning("Could not write %s to issue #%s: %s", marker.key, issue_id, exc)
            self._record_event(marker.event_category, "error", {**event_data, "reason": str(exc)})
            return WriteResult(action="failed", error=str(exc))

        self._record_event(marker.event_category, "success", {**event_data, "action": action})
        return WriteResult(
            ok=True,
            action=action,
            comment_id=comment_id if isinstance(comment_id, int) else None,
            updated_at=updated_at,
        )

    # ------------------------------------------------------------------
    # Orchestration state
    # ------------------------------------------------------------------

    def get_orchestration_state(self, issue_id: int) -> StateRecord | None:
        return self.get(issue_id, ORCHESTRATION_STATE)

    def set_orchestration_state(
        self,
        issue_id: int,
        status: OrchestrationStatus | str,
        data: dict[str, Any] | None = None,
    ) -> WriteResult:
        return self.set(issue_id, ORCHESTRATION_STATE, status, data)

    # ------------------------------------------------------------------
    # Worker assignment
    # ------------------------------------------------------------------

    def get_worker_assignment(self, issue_id: int) -> WorkerAssignment | None:
        record = self.get(issue_id, WORKER_ASSIGNMENT)
        if record is None:
            return None
        try:
            return WorkerAssignment.model_validate(record.payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed worker assignment on issue #%s: %s", issue_id, exc)
            return None

    def assign_worker(
        self,
        issue_id: int,
        worker_id: str,
        data: dict[str, Any] | None = None,
    ) -> WriteResult:
        worker = str(worker_id or "").strip()
        if not worker:
            return WriteResult(action="failed", error="worker id is required")
        assignment = WorkerAssignment(
            assigned=True,
            worker_id=worker,
            assigned_at=utc_timestamp(self._clock()),
            data=dict(data or {}),
        )
        summary = (
            f"**Worker Assigned:** `{worker}`\n**Assigned At:** {assignment.assigned_at}"
        )
        return self.set(
            issue_id,
            WORKER_ASSIGNMENT,
            "assigned",
            assignment.model_dump(),
            summary=summary,
        )

    def clear_worker_assignment(self, issue_id: int) -> WriteResult:
        assignment = WorkerAssignment(assigned=False, cleared_at=utc_timestamp(self._clock()))
        summary = f"**Worker Assignment Cleared**\n**Cleared At:** {assignment.cleared_at}"
        return self.set(
            issue_id,
            WORKER_ASSIGNMENT,
            "cleared",
            assignment.model_dump(),
            summary=summary,
        )

    # ------------------------------------------------------------------
    # Handover context
    # ------------------------------------------------------------------

    def get_handover(self, issue_id: int) -> HandoverContext | None:
        """Handover for *issue_id*; markdown-only comments are returned verbatim."""
        record = self.get(issue_id, HANDOVER_CONTEXT)
        if record is not None:
            try:
                return HandoverContext.model_validate(record.payload)
            except ValidationError as exc:
                logger.warning("Ignoring malformed handover on issue #%s: %s", issue_id, exc)
                return None
        try:
            comment = self._find_latest(issue_id, HANDOVER_CONTEXT)
        except ExternalCallError:
            return None
        if comment is None:
            return None
        block = extract_block(str(comment.get("body") or ""), HANDOVER_CONTEXT)
        if not block or not block.strip():
            return None
        return HandoverContext(content=block.strip())

    def set_handover(
        self,
        issue_id: int,
        content: str,
        previous_session: str = "",
    ) -> WriteResult:
        text = str(content or "").strip()
        if not text:
            return WriteResult(action="failed", error="handover content is required")
        handover = HandoverContext(
            content=text,
            previous_session=str(previous_session or "").strip(),
            created_at=utc_timestamp(self._clock()),
        )
        lines = ["## Handover Context", "", f"**Created:** {handover.created_at}"]
        if handover.previous_session:
            lines.append(f"**Previous Session:** `{handover.previous_session}`")
        lines.extend(["", "---", "", text])
        return self.set(
            issue_id,
            HANDOVER_CONTEXT,
            "available",
            handover.model_dump(),
            summary="\n".join(lines),
        )


def resolve_tracking_issue(client: Any, configured: int | None = None) -> int | None:
    """Configured tracking issue, else the first open issue labelled ``orchestration``."""
    if configured is not None:
        return configured
    if client is None:
        return None
    try:
        return client.find_open_issue_by_label(TRACKING_ISSUE_LABEL)
    except ExternalCallError as exc:
        logger.warning("Could not look up the tracking issue: %s", exc)
        return None
