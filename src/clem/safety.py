"""Call-safety rewriting: blocking-call mocks and call-count guards.

Two trailing-comment directives are understood, in either order and with
or without a space before the parenthesis::

    name = input()   # mock("alice")
    step()           # limit(5)
    x = fetch()      # mock(42) limit(3)
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Callable

from clem.preamble import DEFAULT_CALL_LIMIT, guarded_value
from clem.scanner import code_positions, matching_bracket

logger = logging.getLogger(__name__)

_DIRECTIVE_RE = re.compile(r"\b(?P<name>mock|limit)\s*\(")
_BLOCKING_CALL_RE = re.compile(
    r"(?<![\w.])(?P<name>sys\.stdin\.readline|sys\.stdin\.read|getpass\.getpass|getpass|input)\s*\("
)
DEFAULT_MOCK = '""'


@dataclass(frozen=True)
class Directives:
    mock: str | None = None
    limit: int | None = None

    def effective_limit(self, default: int = DEFAULT_CALL_LIMIT) -> int:
        return self.limit if self.limit is not None else default


def parse_directives(comment: str) -> Directives:
    """Read ``mock(...)`` and ``limit(...)`` from a trailing comment."""
    mock: str | None = None
    limit: int | None = None
    position = 0
    while True:
        match = _DIRECTIVE_RE.search(comment, position)
        if match is None:
            break
        open_paren = match.end() - 1
        close_paren = matching_bracket(comment, open_paren)
        if close_paren < 0:
            logger.debug("unterminated %s directive in %r", match.group("name"), comment)
            break
        argument = comment[open_paren + 1 : close_paren].strip()
        if match.group("name") == "mock":
            mock = argument
        else:
            try:
                value = int(argument)
            except ValueError:
                logger.warning("ignoring non-integer limit directive %r", argument)
            else:
                if value > 0:
                    limit = value
                else:
                    logger.warning("ignoring non-positive limit directive %r", argument)
        position = close_paren + 1
    return Directives(mock=mock, limit=limit)


def _blocking_call_spans(code: str) -> list[tuple[int, int]]:
    code_indices = {index for index, _depth in code_positions(code)}
    spans: list[tuple[int, int]] = []
    position = 0
    while True:
        match = _BLOCKING_CALL_RE.search(code, position)
        if match is None:
            return spans
        if match.start() not in code_indices:
            position = match.start() + 1
            continue
        close_paren = matching_bracket(code, match.end() - 1)
        if close_paren < 0:
            return spans
        spans.append((match.start(), close_paren + 1))
        position = close_paren + 1


def has_blocking_call(code: str) -> bool:
    return bool(_blocking_call_spans(code))


def substitute_blocking_calls(
    code: str,
    *,
    line: int,
    directives: Directives,
    next_site: Callable[[], str],
    call_limit: int = DEFAULT_CALL_LIMIT,
) -> tuple[str, int]:
    """Replace every blocking call in ``code`` with a guarded mock value.

    Returns the rewritten code and the number of calls replaced. The real
    call is never made: the value is the ``mock`` directive or ``""``.
    """
    spans = _blocking_call_spans(code)
    if not spans:
        return code, 0
    value = directives.mock if directives.mock else DEFAULT_MOCK
    limit = directives.effective_limit(call_limit)
    pieces: list[str] = []
    cursor = 0
    for start, stop in spans:
        pieces.append(code[cursor:start])
        pieces.append(guarded_value(next_site(), line, limit, value))
        cursor = stop
    pieces.append(code[cursor:])
    logger.debug("line %d: mocked %d blocking call(s)", line, len(spans))
    return "".join(pieces), len(spans)
