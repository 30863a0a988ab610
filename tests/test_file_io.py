"""Tests for the atomic write, lock and tail helpers behind the ledger and event log."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

import codex_relay.file_io as file_io

pytestmark = pytest.mark.unit


def test_path_lock_reuses_same_lock_for_resolved_aliases(tmp_path: Path) -> None:
    primary = tmp_path / "state" / ".account-exhaustion.json"
    alias = tmp_path / "state" / ".." / "state" / ".account-exhaustion.json"

    assert file_io._path_lock(primary) is file_io._path_lock(alias)


def test_replace_file_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.json"
    dst = tmp_path / "dst.json"
    src.write_text("new", encoding="utf-8")
    dst.write_text("old", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and Path(target) == dst and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io.time, "sleep", lambda _seconds: None)

    file_io._replace_file_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "new"


def test_replace_file_with_retry_raises_non_permission_oserror(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.json"
    src.write_text("x", encoding="utf-8")

    def fail_replace(_self: Path, _target: Path) -> Path:
        raise OSError(5, "io error")

    monkeypatch.setattr(Path, "replace", fail_replace)

    with pytest.raises(OSError) as exc_info:
        file_io._replace_file_with_retry(src, tmp_path / "dst.json")

    assert exc_info.value.errno == 5


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_atomic_write_text_applies_mode_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "ledger.json"

    file_io.atomic_write_text(target, '{"a": 1}\n', mode=0o600)

    assert target.read_text(encoding="utf-8") == '{"a": 1}\n'
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert [p.name for p in target.parent.iterdir()] == ["ledger.json"]


def test_append_line_terminates_each_line(tmp_path: Path) -> None:
    target = tmp_path / "events.jsonl"

    file_io.append_line(target, "one")
    file_io.append_line(target, "two\n")

    assert target.read_text(encoding="utf-8") == "one\ntwo\n"


def test_read_tail_lines_returns_last_lines_only(tmp_path: Path) -> None:
    target = tmp_path / "transcript.jsonl"
    target.write_text("".join(f"line {i}\n" for i in range(100)), encoding="utf-8")

    tail = file_io.read_tail_lines(target, 3)

    assert tail == ["line 97", "line 98", "line 99"]


def test_read_tail_lines_tolerates_missing_and_undecodable_files(tmp_path: Path) -> None:
    assert file_io.read_tail_lines(tmp_path / "missing.jsonl", 50) == []

    binary = tmp_path / "binary.log"
    binary.write_bytes(b"ok\n\xff\xfe broken\n")
    tail = file_io.read_tail_lines(binary, 50)
    assert tail[0] == "ok"
    assert len(tail) == 2


def test_interprocess_lock_creates_lock_file_and_releases_it(tmp_path: Path) -> None:
    lock_path = tmp_path / "state" / "ledger.json.lock"

    with file_io.interprocess_lock(lock_path):
        assert lock_path.exists()

    with file_io.interprocess_lock(lock_path):
        pass
