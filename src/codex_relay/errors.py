"""Exception taxonomy shared by the relay components.

These are raised by leaf helpers (HTTP transport, envelope parsing, process
lookup, settings resolution) and caught at component boundaries, where they
are logged and turned into a neutral result. None of them should escape a
hook invocation.
"""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for relay failures."""


class ExternalCallError(RelayError):
    """A network or GitHub API call failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StateParseError(RelayError):
    """A stored state comment did not contain a parseable JSON envelope."""


class ProcessNotFoundError(RelayError):
    """The host process targeted for termination could not be located."""


class MissingConfigurationError(RelayError):
    """Required pool, account, repository or environment data is absent."""
