"""Minimal GitHub REST client for issue comments, pull requests and check runs.

Only the handful of endpoints the relay needs are wrapped. Every failure is
raised as :class:`~codex_relay.errors.ExternalCallError`; callers decide how
to degrade. Requests are blocking with a fixed timeout and are never retried.
"""

from __future__ import annotations

import http.client
import json
import logging
import re
from collections.abc import Callable
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from codex_relay.config import DEFAULT_GITHUB_API_URL, DEFAULT_GITHUB_TIMEOUT_SECONDS
from codex_relay.errors import ExternalCallError, MissingConfigurationError

logger = logging.getLogger(__name__)

_PER_PAGE = 100
_MAX_PAGES = 50
_LINK_NEXT_RE = re.compile(r'<([^>]+)>\s*;\s*rel="next"')
_REPO_SLUG_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

Opener = Callable[..., Any]


def _next_link(link_header: str | None) -> str:
    if not link_header:
        return ""
    match = _LINK_NEXT_RE.search(link_header)
    return match.group(1) if match else ""


class GitHubClient:
    """Blocking GitHub REST client bound to one ``owner/name`` repository."""

    def __init__(
        self,
        repo: str,
        *,
        token: str = "",
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout_seconds: float = DEFAULT_GITHUB_TIMEOUT_SECONDS,
        opener: Opener | None = None,
    ) -> None:
        slug = str(repo or "").strip()
        if not _REPO_SLUG_RE.match(slug):
            raise MissingConfigurationError(f"GitHub repository must be 'owner/name', got {slug!r}")
        self.repo = slug
        self.token = str(token or "").strip()
        self.api_url = str(api_url or DEFAULT_GITHUB_API_URL).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._opener = opener or urlopen

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "codex-relay",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path: str, query: dict[str, Any] | None = None) -> str:
        url = f"{self.api_url}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _send(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None = None,
    ) -> tuple[Any, str]:
        data = None
        headers = self._headers()
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        logger.debug("GitHub %s %s", method, url)
        try:
            request = Request(url, data=data, headers=headers, method=method)
            with self._opener(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
                charset = response.headers.get_content_charset() or "utf-8"
                link = response.headers.get("Link", "")
        except HTTPError as exc:
            detail = ""
            try:
                detail = exc.read().decode("utf-8", errors="replace")
            except Exception:
                detail = ""
            msg = f"HTTP {exc.code} for {method} {url}"
            if detail:
                msg = f"{msg}: {detail[:200]}"
            raise ExternalCallError(msg, status=exc.code) from exc
        except URLError as exc:
            raise ExternalCallError(f"Network error for {method} {url}: {exc.reason}") from exc
        except (OSError, TimeoutError, http.client.HTTPException) as exc:
            raise ExternalCallError(f"Network error for {method} {url}: {exc!r}") from exc
        except ValueError as exc:
            raise ExternalCallError(f"Invalid request {method} {url}: {exc}") from exc

        if not raw:
            return None, link
        try:
            return json.loads(raw.decode(charset, errors="replace")), link
        except (ValueError, LookupError) as exc:
            raise ExternalCallError(f"Non-JSON response from {method} {url}") from exc

    def _get_list(self, path: str, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        params = {"per_page": _PER_PAGE, **(query or {})}
        url = self._url(path, params)
        rows: list[dict[str, Any]] = []
        for _ in range(_MAX_PAGES):
            payload, link = self._send("GET", url)
            if not isinstance(payload, list):
                raise ExternalCallError(f"Expected a JSON list from GET {url}")
            rows.extend(item for item in payload if isinstance(item, dict))
            url = _next_link(link)
            if not url:
                break
        return rows

    def _get_object(self, path: str, query: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self._url(path, query)
        payload, _ = self._send("GET", url)
        if not isinstance(payload, dict):
            raise ExternalCallError(f"Expected a JSON object from GET {url}")
        return payload

    # ------------------------------------------------------------------
    # Issues and comments
    # ------------------------------------------------------------------

    def list_issue_comments(self, issue: int) -> list[dict[str, Any]]:
        """All comments on an issue or pull request, oldest first."""
        return self._get_list(f"repos/{self.repo}/issues/{int(issue)}/comments")

    def create_comment(self, issue: int, body: str) -> dict[str, Any]:
        payload, _ = self._send(
            "POST",
            self._url(f"repos/{self.repo}/issues/{int(issue)}/comments"),
            {"body": body},
        )
        return payload if isinstance(payload, dict) else {}

    def update_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        payload, _ = self._send(
            "PATCH",
            self._url(f"repos/{self.repo}/issues/comments/{int(comment_id)}"),
            {"body": body},
        )
        return payload if isinstance(payload, dict) else {}

    def find_open_issue_by_label(self, label: str) -> int | None:
        """Number of the most recent open issue carrying *label* (PRs excluded)."""
        rows = self._get_list(
            f"repos/{self.repo}/issues",
            {"labels": label, "state": "open"},
        )
        for row in rows:
            if "pull_request" in row:
                continue
            number = row.get("number")
            if isinstance(number, int):
                return number
        return None

    # ------------------------------------------------------------------
    # Pull requests and CI
    # ------------------------------------------------------------------

    def current_user_login(self) -> str:
        return str(self._get_object("user").get("login") or "")

    def list_open_pulls(self, author: str = "") -> list[dict[str, Any]]:
        """Open pull requests, optionally restricted to one author login."""
        pulls = self._get_list(f"repos/{self.repo}/pulls", {"state": "open"})
        wanted = author.strip().lower()
        if not wanted:
            return pulls
        return [
            pr
            for pr in pulls
            if str((pr.get("user") or {}).get("login", "")).lower() == wanted
        ]

    def list_pull_review_comments(self, pr: int) -> list[dict[str, Any]]:
        return self._get_list(f"repos/{self.repo}/pulls/{int(pr)}/comments")

    def pull_check_runs(self, pr: int | str) -> list[dict[str, Any]]:
        """Check runs reported against the head commit of a pull request."""
        pull = self._get_object(f"repos/{self.repo}/pulls/{int(pr)}")
        sha = str((pull.get("head") or {}).get("sha") or "")
        if not sha:
            raise ExternalCallError(f"Pull request #{pr} has no head commit")
        runs: list[dict[str, Any]] = []
        url = self._url(
            f"repos/{self.repo}/commits/{quote(sha)}/check-runs",
            {"per_page": _PER_PAGE},
        )
        for _ in range(_MAX_PAGES):
            payload, link = self._send("GET", url)
            if not isinstance(payload, dict):
                raise ExternalCallError(f"Expected a JSON object from GET {url}")
            rows = payload.get("check_runs", [])
            if isinstance(rows, list):
                runs.extend(row for row in rows if isinstance(row, dict))
            url = _next_link(link)
            if not url:
                break
        return runs
