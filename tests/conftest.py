"""Shared pytest configuration: marker registration, ordering and in-memory fakes."""

from __future__ import annotations

import datetime as dt
from typing import Any

import pytest

from codex_relay.errors import ExternalCallError


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


def _check_run(status: str = "completed", conclusion: str | None = "success") -> dict[str, Any]:
    return {"status": status, "conclusion": conclusion}


class FakeGitHubClient:
    """In-memory stand-in for ``GitHubClient``."""

    def __init__(self) -> None:
        self.comments: dict[int, list[dict[str, Any]]] = {}
        self.review_comments: dict[int, list[dict[str, Any]]] = {}
        self.check_runs: dict[str, list[dict[str, Any]]] = {}
        self.pulls: list[dict[str, Any]] = []
        self.login = "octocat"
        self.labelled_issue: int | None = None
        self.fail_reads = False
        self.fail_writes = False
        self.fail_pulls = False
        self.failing_prs: set[str] = set()
        self.pull_authors: list[str] = []
        self.writes: list[tuple[str, int]] = []
        self._next_id = 1000

    def list_issue_comments(self, issue: int) -> list[dict[str, Any]]:
        if self.fail_reads:
            raise ExternalCallError("GET comments failed", status=502)
        return [dict(comment) for comment in self.comments.get(int(issue), [])]

    def create_comment(self, issue: int, body: str) -> dict[str, Any]:
        if self.fail_writes:
            raise ExternalCallError("POST comment failed", status=500)
        self._next_id += 1
        comment = {"id": self._next_id, "body": body}
        self.comments.setdefault(int(issue), []).append(comment)
        self.writes.append(("create", self._next_id))
        return dict(comment)

    def update_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        if self.fail_writes:
            raise ExternalCallError("PATCH comment failed", status=500)
        for comments in self.comments.values():
            for comment in comments:
                if comment["id"] == comment_id:
                    comment["body"] = body
                    self.writes.append(("update", comment_id))
                    return dict(comment)
        raise ExternalCallError("comment not found", status=404)

    def find_open_issue_by_label(self, label: str) -> int | None:
        return self.labelled_issue

    def current_user_login(self) -> str:
        if not self.login:
            raise ExternalCallError("GET /user failed", status=401)
        return self.login

    def list_open_pulls(self, author: str = "") -> list[dict[str, Any]]:
        if self.fail_pulls:
            raise ExternalCallError("GET pulls failed", status=503)
        self.pull_authors.append(author)
        return [dict(pull) for pull in self.pulls]

    def list_pull_review_comments(self, pr: int) -> list[dict[str, Any]]:
        return list(self.review_comments.get(int(pr), []))

    def pull_check_runs(self, pr: int | str) -> list[dict[str, Any]]:
        if str(pr) in self.failing_prs:
            raise ExternalCallError(f"check runs for #{pr} failed", status=502)
        return list(self.check_runs.get(str(pr), []))


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**delta)
        return self.now


T0 = dt.datetime(2026, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def github() -> FakeGitHubClient:
    return FakeGitHubClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def check_run():
    """Factory for check-run payloads as returned by the GitHub API."""
    return _check_run
