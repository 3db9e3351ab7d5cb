"""Runtime support text and probe builders for generated programs.

Wire convention with the interpreter:

* every probe prints ``"<line>:" + payload`` on stdout, ``line`` being the
  0-based index of the original line the probe reports on;
* the exit hook prints ``"<line>:!!! Never runs"`` for registered branches
  that were never entered and ``"<line>:<n> iterations"`` otherwise;
* guard violations raise with a message prefixed ``ClemExcep<line>:``.
"""

from __future__ import annotations

import re

GUARD_PREFIX = "ClemExcep"
NEVER_RUNS = "!!! Never runs"
ITERATIONS_SUFFIX = " iterations"
DEFAULT_CALL_LIMIT = 100

PROBE_LINE_RE = re.compile(r'^\s*print\("(?P<line>\d+):')
GUARD_MESSAGE_RE = re.compile(GUARD_PREFIX + r"(?P<line>\d+):(?P<message>[^\n]*)")

PREAMBLE = f'''\
import atexit as _clem_atexit
_clem_calls = {{}}
_clem_branches = {{}}


class _ClemGuardError(Exception):
    pass


def _clem_guard(site, line, limit):
    count = _clem_calls.get(site, 0) + 1
    _clem_calls[site] = count
    if count > limit:
        raise _ClemGuardError("{GUARD_PREFIX}%d:call limit of %d reached" % (line, limit))


def _clem_mark(key):
    _clem_branches.setdefault(key, 0)


def _clem_enter(key):
    _clem_branches[key] = _clem_branches.get(key, 0) + 1


def _clem_report():
    for key, count in _clem_branches.items():
        if count == 0:
            print(key + ":{NEVER_RUNS}")
        else:
            print(key + ":" + str(count) + "{ITERATIONS_SUFFIX}")


_clem_atexit.register(_clem_report)
'''

PREAMBLE_LINES: tuple[str, ...] = tuple(PREAMBLE.rstrip("\n").split("\n")) + ("",)


def probe_tag(line: int) -> str:
    return f'"{line}:"'


def probe(line: int, payload: str | None = None) -> str:
    """A probe statement for ``line``; ``payload`` is a Python expression."""
    if payload is None:
        return f"print({probe_tag(line)})"
    return f"print({probe_tag(line)} + str({payload}))"


def param_probe(line: int, name: str) -> str:
    return f'print("{line}:{name}: " + str({name}))'


def mark_call(line: int) -> str:
    return f'_clem_mark("{line}")'


def enter_call(line: int) -> str:
    return f'_clem_enter("{line}")'


def guard_call(site: str, line: int, limit: int) -> str:
    return f'_clem_guard("{site}", {line}, {limit})'


def guarded_value(site: str, line: int, limit: int, value: str) -> str:
    """Expression that counts a call site and then yields ``value``."""
    return f"({guard_call(site, line, limit)} or ({value}))"


def probe_line_target(text: str) -> int | None:
    match = PROBE_LINE_RE.match(text)
    if match is None:
        return None
    return int(match.group("line"))
