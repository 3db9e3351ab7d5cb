"""Lexical scanner for the probe rewriter.

There is no parser behind the rewriter, so everything that needs to know
whether a character is code, string content or comment goes through the
character walker in this module. The walker understands single, double and
triple quoted strings (either quote character), backslash escapes inside
strings, ``#`` comments and the three bracket pairs. String state can be
carried from one physical line into the next.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Iterator, Sequence

from clem.model import LogicalStatement

_OPENERS = "([{"
_CLOSERS = ")]}"


class StringState(StrEnum):
    NONE = "none"
    SINGLE = "single"
    DOUBLE = "double"
    TRIPLE_SINGLE = "triple_single"
    TRIPLE_DOUBLE = "triple_double"


_TERMINATORS: dict[StringState, str] = {
    StringState.SINGLE: "'",
    StringState.DOUBLE: '"',
    StringState.TRIPLE_SINGLE: "'''",
    StringState.TRIPLE_DOUBLE: '"""',
}


@dataclass(frozen=True)
class ScanResult:
    bracket_delta: int
    string_state: StringState
    comment_start: int = -1


class _Walker:
    """Walk ``text`` and yield the indices of code characters.

    After iteration ``state`` holds the string state at the end of the text
    and ``comment_start`` the index of the first comment, or -1.
    """

    def __init__(self, text: str, carry: StringState = StringState.NONE) -> None:
        self.text = text
        self.state = carry
        self.comment_start = -1

    def __iter__(self) -> Iterator[int]:
        text = self.text
        length = len(text)
        i = 0
        while i < length:
            ch = text[i]
            if self.state is not StringState.NONE:
                if ch == "\\":
                    i += 2
                    continue
                terminator = _TERMINATORS[self.state]
                if text.startswith(terminator, i):
                    i += len(terminator)
                    self.state = StringState.NONE
                    continue
                i += 1
                continue
            if ch == "#":
                if self.comment_start < 0:
                    self.comment_start = i
                newline = text.find("\n", i)
                if newline < 0:
                    return
                i = newline
                continue
            if ch == "'" or ch == '"':
                if text.startswith(ch * 3, i):
                    self.state = (
                        StringState.TRIPLE_DOUBLE if ch == '"' else StringState.TRIPLE_SINGLE
                    )
                    i += 3
                else:
                    self.state = StringState.DOUBLE if ch == '"' else StringState.SINGLE
                    i += 1
                continue
            yield i
            i += 1


def scan_open_state(line: str, carry: StringState = StringState.NONE) -> ScanResult:
    """Return the net bracket delta of ``line`` and the string state it leaves open."""
    walker = _Walker(line, carry)
    delta = 0
    for i in walker:
        ch = line[i]
        if ch in _OPENERS:
            delta += 1
        elif ch in _CLOSERS:
            delta -= 1
    return ScanResult(
        bracket_delta=delta,
        string_state=walker.state,
        comment_start=walker.comment_start,
    )


def comment_start(line: str, carry: StringState = StringState.NONE) -> int:
    return scan_open_state(line, carry).comment_start


def strip_comment(line: str, carry: StringState = StringState.NONE) -> tuple[str, str]:
    """Split ``line`` into (code, comment text without the ``#``)."""
    index = comment_start(line, carry)
    if index < 0:
        return line, ""
    return line[:index], line[index + 1 :].strip()


def is_blank(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def code_positions(text: str) -> Iterator[tuple[int, int]]:
    """Yield ``(index, depth)`` for every code character of ``text``.

    ``depth`` is the nesting outside the character, so a bracket pair at the
    top level reports depth 0 for both the opener and the closer.
    """
    depth = 0
    for i in _Walker(text):
        ch = text[i]
        if ch in _CLOSERS:
            depth = max(0, depth - 1)
            yield i, depth
            continue
        yield i, depth
        if ch in _OPENERS:
            depth += 1


def find_unquoted_char(text: str, ch: str, from_index: int = 0) -> int:
    """Locate ``ch`` outside of strings, comments and bracket nesting."""
    for i, depth in code_positions(text):
        if i >= from_index and depth == 0 and text[i] == ch:
            return i
    return -1


def find_top_level_colon(text: str) -> int:
    """First top-level ``:`` that is not part of a walrus ``:=``."""
    for i, depth in code_positions(text):
        if depth == 0 and text[i] == ":" and not text.startswith(":=", i):
            return i
    return -1


def find_top_level_keyword(text: str, word: str, from_index: int = 0) -> int:
    for i, depth in code_positions(text):
        if i < from_index or depth != 0 or not text.startswith(word, i):
            continue
        before = text[i - 1] if i > 0 else " "
        after_index = i + len(word)
        after = text[after_index] if after_index < len(text) else " "
        if before.isalnum() or before == "_" or after.isalnum() or after == "_":
            continue
        return i
    return -1


def matching_bracket(text: str, open_index: int) -> int:
    """Index of the bracket closing the one at ``open_index``, or -1."""
    if open_index < 0 or open_index >= len(text) or text[open_index] not in _OPENERS:
        return -1
    depth = 0
    for i, _depth in code_positions(text):
        if i < open_index:
            continue
        ch = text[i]
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i
    return -1


def _ends_with_continuation(line: str, result: ScanResult) -> bool:
    return (
        result.string_state is StringState.NONE
        and result.comment_start < 0
        and line.endswith("\\")
    )


def assemble_statement(
    lines: Sequence[str], start: int, end: int | None = None
) -> LogicalStatement:
    """Fuse the physical lines of the logical statement beginning at ``start``.

    The statement ends on the first line where the bracket depth is back to
    zero or below, no string is open and there is no backslash continuation.
    An unterminated string or bracket consumes every remaining line.
    """
    stop = len(lines) if end is None else min(end, len(lines))
    depth = 0
    state = StringState.NONE
    index = start
    last_carry = StringState.NONE
    while True:
        last_carry = state
        result = scan_open_state(lines[index], state)
        depth += result.bracket_delta
        state = result.string_state
        still_open = (
            state is not StringState.NONE
            or depth > 0
            or _ends_with_continuation(lines[index], result)
        )
        if not still_open or index + 1 >= stop:
            break
        index += 1
    physical = tuple(lines[start : index + 1])
    last_code, comment = strip_comment(physical[-1], last_carry)
    if comment and state is not StringState.NONE:
        last_code, comment = physical[-1], ""
    code = "\n".join((*physical[:-1], last_code.rstrip()))
    return LogicalStatement(
        start=start,
        end=index,
        lines=physical,
        code=code,
        comment=comment,
        returned_previously=_is_keyword_start(physical[0].lstrip(), "return"),
    )


def _is_keyword_start(text: str, word: str) -> bool:
    if not text.startswith(word):
        return False
    rest = text[len(word) :]
    return not rest or not (rest[0].isalnum() or rest[0] == "_")


def iter_statement_starts(
    lines: Sequence[str], start: int, end: int | None = None
) -> Iterator[int]:
    """Yield the first physical line index of each logical statement."""
    stop = len(lines) if end is None else min(end, len(lines))
    index = start
    while index < stop:
        yield index
        if is_blank(lines[index]):
            index += 1
            continue
        index = assemble_statement(lines, index, stop).end + 1
