"""Generated-line to source-line mapping.

The rewriter records the origin of every line it emits, so the map built
during emission is exact. ``from_program_text`` rebuilds a map from a
generated text alone by scanning for probe statements; the harness uses it
when it is handed bare program text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from clem.preamble import probe_line_target


@dataclass
class LineIndexMap:
    entries: dict[int, int] = field(default_factory=dict)

    def record(self, generated: int, source: int) -> None:
        self.entries[generated] = source

    def get(self, generated: int) -> int | None:
        return self.entries.get(generated)

    def resolve(self, generated: int) -> int:
        """Source line for ``generated``, falling back to the index itself."""
        return self.entries.get(generated, generated)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, generated: object) -> bool:
        return generated in self.entries

    def as_dict(self) -> Mapping[int, int]:
        return dict(self.entries)

    @classmethod
    def from_program_text(cls, text: str) -> LineIndexMap:
        """Rebuild a map by scanning probes.

        A statement whose next line at its own depth is a probe belongs to
        that probe's line, since probes follow the code they report on.
        Every other line inherits the latest probe seen above it.
        """
        lines = text.split("\n")
        line_map = cls()
        current: int | None = None
        for index, line in enumerate(lines):
            target = probe_line_target(line)
            if target is not None:
                current = target
                line_map.record(index, target)
                continue
            owner = _reporting_probe(lines, index)
            if owner is not None:
                line_map.record(index, owner)
            elif current is not None:
                line_map.record(index, current)
        return line_map


def _depth(line: str) -> int:
    return len(line) - len(line.lstrip())


def _reporting_probe(lines: Sequence[str], index: int) -> int | None:
    line = lines[index]
    if not line.strip() or line.rstrip().endswith(":"):
        return None
    depth = _depth(line)
    for following in lines[index + 1 :]:
        if not following.strip() or _depth(following) > depth:
            continue
        if _depth(following) < depth:
            return None
        return probe_line_target(following)
    return None


def nearest_probe_before(program_lines: Sequence[str], index: int) -> int | None:
    """Source line of the closest probe at or above generated line ``index``."""
    upper = min(index, len(program_lines) - 1)
    for position in range(upper, -1, -1):
        target = probe_line_target(program_lines[position])
        if target is not None:
            return target
    return None
