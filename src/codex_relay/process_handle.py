"""Locate and stop the host agent process.

The failover controller only sees :class:`ProcessHandle` and
:class:`ProcessLocator`; the psutil-backed implementations below are the
production ones and tests substitute in-memory fakes.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 1.0


class TerminationResult(str, Enum):
    ALREADY_EXITED = "already_exited"
    TERMINATED = "terminated"
    KILLED = "killed"
    FAILED = "failed"


class ProcessHandle(Protocol):
    pid: int

    def terminate(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> TerminationResult: ...


class ProcessLocator(Protocol):
    def locate(self, binary_name: str) -> ProcessHandle | None: ...


class PsutilProcessHandle:
    """SIGTERM, wait out the grace period, then SIGKILL."""

    def __init__(self, process: psutil.Process) -> None:
        self._process = process
        self.pid = process.pid

    def __repr__(self) -> str:
        return f"PsutilProcessHandle(pid={self.pid})"

    def terminate(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> TerminationResult:
        try:
            self._process.terminate()
        except psutil.NoSuchProcess:
            return TerminationResult.ALREADY_EXITED
        except psutil.AccessDenied as exc:
            logger.warning("Not allowed to terminate PID %s: %s", self.pid, exc)
            return TerminationResult.FAILED

        try:
            self._process.wait(timeout=max(0.0, float(grace_seconds)))
            return TerminationResult.TERMINATED
        except psutil.TimeoutExpired:
            logger.warning("PID %s did not exit after SIGTERM; sending SIGKILL", self.pid)

        try:
            self._process.kill()
        except psutil.NoSuchProcess:
            return TerminationResult.TERMINATED
        except psutil.AccessDenied as exc:
            logger.warning("Not allowed to kill PID %s: %s", self.pid, exc)
            return TerminationResult.FAILED
        return TerminationResult.KILLED


class PsutilProcessLocator:
    """Find the host by walking up from our parent, then by a system-wide name search."""

    def __init__(self, start_pid: int | None = None) -> None:
        self.start_pid = start_pid

    @staticmethod
    def _name(process: psutil.Process) -> str:
        try:
            return process.name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return ""

    def _walk_parents(self, binary_name: str) -> psutil.Process | None:
        pid = self.start_pid if self.start_pid is not None else os.getppid()
        try:
            process: psutil.Process | None = psutil.Process(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        while process is not None and process.pid > 1:
            if self._name(process) == binary_name:
                return process
            try:
                process = process.parent()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                return None
        return None

    @staticmethod
    def _search(binary_name: str) -> psutil.Process | None:
        for process in psutil.process_iter(["name"]):
            if process.info.get("name") == binary_name:
                return process
        return None

    def locate(self, binary_name: str) -> PsutilProcessHandle | None:
        process = self._walk_parents(binary_name) or self._search(binary_name)
        if process is None:
            logger.debug("No running %s process found", binary_name)
            return None
        return PsutilProcessHandle(process)
