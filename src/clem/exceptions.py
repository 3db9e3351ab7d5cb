"""Exception taxonomy for clem."""

from __future__ import annotations


class ClemError(RuntimeError):
    """Base class for errors raised to callers of the clem core."""


class ConfigError(ClemError):
    """A configuration value failed validation."""


class SpawnError(ClemError):
    """The interpreter process could not be started.

    This is the only condition that aborts a run outright; every other
    failure of the instrumented program is reported as a line result.
    """


class NeverThrown(ClemError):
    """Sentinel exception for code paths that must be unreachable."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})
