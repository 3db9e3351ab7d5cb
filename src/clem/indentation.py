from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from clem.exceptions import ConfigError
from clem.invariants import never
from clem.scanner import StringState, strip_comment


class IndentMode(StrEnum):
    SPACES = "spaces"
    TABS = "tabs"


@dataclass(frozen=True)
class IndentConfig:
    """Indentation unit: ``width`` spaces, or one tab."""

    width: int = 4
    mode: IndentMode = IndentMode.SPACES

    def __post_init__(self) -> None:
        try:
            mode = IndentMode(self.mode)
        except ValueError as exc:
            raise ConfigError(f"indent_mode must be 'spaces' or 'tabs', got {self.mode!r}") from exc
        if isinstance(self.width, bool):
            raise ConfigError(f"indent_width must be an integer, got {self.width!r}")
        try:
            width = int(self.width)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"indent_width must be an integer, got {self.width!r}") from exc
        if width < 1:
            raise ConfigError(f"indent_width must be >= 1, got {width}")
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "width", width)

    @property
    def unit(self) -> str:
        if self.mode is IndentMode.TABS:
            return "\t"
        if self.mode is IndentMode.SPACES:
            return " " * self.width
        never("unknown indent mode", mode=self.mode)


def measure_indent(line: str, config: IndentConfig) -> int:
    """Count the leading indentation units of ``line``.

    Counting stops at the first character that does not complete a unit, so
    malformed leading whitespace only ever shortens the level.
    """
    unit = config.unit
    level = 0
    position = 0
    while line.startswith(unit, position):
        level += 1
        position += len(unit)
    return level


def ends_with_colon(line: str, carry: StringState = StringState.NONE) -> bool:
    code, _comment = strip_comment(line, carry)
    return code.rstrip().endswith(":")


def entry_indent(line: str, config: IndentConfig, ignore_colon: bool = False) -> int:
    """Indentation a block opened by ``line`` must have."""
    level = measure_indent(line, config)
    if not ignore_colon and ends_with_colon(line):
        level += 1
    return level


def render_indent(level: int, config: IndentConfig) -> str:
    return config.unit * max(0, level)
