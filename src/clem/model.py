from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Tuple

if TYPE_CHECKING:
    from clem.source_map import LineIndexMap


@dataclass(frozen=True)
class SourceLine:
    index: int
    text: str


@dataclass(frozen=True)
class LogicalStatement:
    """One or more physical lines fused by continuation, brackets or strings.

    ``code`` is the fused text with the trailing comment of the last physical
    line removed; ``comment`` is that comment without its ``#``.
    """

    start: int
    end: int
    lines: Tuple[str, ...]
    code: str
    comment: str = ""
    returned_previously: bool = False

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def interior(self) -> range:
        return range(self.start + 1, self.end + 1)


@dataclass(frozen=True)
class GeneratedLine:
    text: str
    origin: int | None = None


@dataclass(frozen=True)
class GeneratedProgram:
    text: str
    line_map: LineIndexMap
    source_lines: Tuple[SourceLine, ...] = ()
    preamble_length: int = 0

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")


@dataclass(frozen=True)
class OutputChunk:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class LineResult:
    line: int
    value: str
    is_error: bool = False


@dataclass
class StatementCounts:
    by_kind: dict[str, int] = field(default_factory=dict)

    def add(self, kind: str) -> None:
        self.by_kind[kind] = self.by_kind.get(kind, 0) + 1
