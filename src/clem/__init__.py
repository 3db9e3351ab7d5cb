"""Clem package root."""

__version__ = "0.1.0"

from clem.exceptions import ClemError, ConfigError, NeverThrown, SpawnError
from clem.fuser import fuse
from clem.harness import CancellationHandle, OutputCollector, RunOutcome, RunState, execute
from clem.indentation import IndentConfig, IndentMode
from clem.invariants import never
from clem.model import GeneratedProgram, LineResult
from clem.rewriter import instrument

__all__ = [
    "__version__",
    "CancellationHandle",
    "ClemError",
    "ConfigError",
    "GeneratedProgram",
    "IndentConfig",
    "IndentMode",
    "LineResult",
    "NeverThrown",
    "OutputCollector",
    "RunOutcome",
    "RunState",
    "SpawnError",
    "execute",
    "fuse",
    "instrument",
    "never",
]
