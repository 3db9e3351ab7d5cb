"""Probe rewriter.

``instrument`` turns an arbitrary (possibly incomplete) script into a program
that prints the value of every meaningful line. There is no AST: each
logical statement is classified by the recognizers and rewritten by text
surgery, and a driver loop threads the cursor and the indentation level from
one statement to the next.

Every case handler takes one statement and returns a ``Step``: the generated
lines, the next cursor, the next indentation level and, for block headers,
the prologue that must open the block (branch counters, parameter probes,
guards). The driver places a pending prologue before the first statement of
the block, or after it when that statement is a docstring.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import itertools
import logging
import re
from typing import Sequence

from clem.indentation import IndentConfig, measure_indent, render_indent
from clem.model import GeneratedLine, GeneratedProgram, LogicalStatement, SourceLine, StatementCounts
from clem.preamble import (
    DEFAULT_CALL_LIMIT,
    PREAMBLE_LINES,
    enter_call,
    guard_call,
    mark_call,
    param_probe,
    probe,
    probe_tag,
)
from clem.recognizers import (
    CLAUSE_KEYWORDS,
    AnnotatedAssignment,
    Assignment,
    AugmentedAssignment,
    CompoundHeader,
    Construct,
    Decorator,
    DefHeader,
    ForHeader,
    IgnorableStatement,
    InlineCompound,
    PlainStatement,
    PrintCall,
    ReturnStatement,
    classify,
    first_word,
    is_docstring,
)
from clem.safety import Directives, parse_directives, substitute_blocking_calls
from clem.scanner import (
    assemble_statement,
    find_top_level_colon,
    find_unquoted_char,
    is_blank,
    iter_statement_starts,
)
from clem.source_map import LineIndexMap

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_FUTURE_IMPORT_RE = re.compile(r"^from\s+__future__\s+import\b")
_KEYWORD_ARGUMENT_RE = re.compile(r"^[A-Za-z_]\w*\s*=(?!=)")


@dataclass
class Step:
    lines: list[GeneratedLine]
    next_cursor: int
    next_indent: int
    prologue: list[GeneratedLine] | None = None


@dataclass(frozen=True)
class _Statement:
    source: LogicalStatement
    level: int
    indent_text: str
    body: str
    directives: Directives
    mock: str | None
    range_end: int
    guarded: bool = False
    interior_probes: bool = True

    @property
    def line(self) -> int:
        return self.source.start


@dataclass
class Rewriter:
    lines: Sequence[str]
    config: IndentConfig = field(default_factory=IndentConfig)
    call_limit: int = DEFAULT_CALL_LIMIT
    counts: StatementCounts = field(default_factory=StatementCounts)
    hoisted: frozenset[int] = frozenset()

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)

    def rewrite(self) -> list[GeneratedLine]:
        return self.rewrite_range(0, len(self.lines), 0)

    def rewrite_range(
        self,
        begin: int,
        end: int,
        indent: int,
        prologue: list[GeneratedLine] | None = None,
    ) -> list[GeneratedLine]:
        out: list[GeneratedLine] = []
        floor = indent
        pending = prologue
        cursor = begin
        while cursor < end:
            if pending is not None and self._opens_with_docstring(cursor):
                step = self._step(cursor, end, indent, floor)
                out.extend(step.lines)
                out.extend(pending)
            else:
                if pending is not None:
                    out.extend(pending)
                step = self._step(cursor, end, indent, floor)
                out.extend(step.lines)
            pending = step.prologue
            cursor, indent = step.next_cursor, step.next_indent
        if pending is not None:
            out.extend(pending)
        return out

    # -- helpers ---------------------------------------------------------

    def _next_id(self) -> int:
        return next(self._ids)

    def _next_site(self) -> str:
        return f"s{self._next_id()}"

    def _at(self, level: int, text: str, origin: int) -> GeneratedLine:
        return GeneratedLine(render_indent(level, self.config) + text, origin)

    def _code(self, text: str, start: int, end: int) -> list[GeneratedLine]:
        return [
            GeneratedLine(physical, min(start + offset, end))
            for offset, physical in enumerate(text.split("\n"))
        ]

    def _level(self, index: int) -> int:
        return measure_indent(self.lines[index], self.config)

    def _next_code_line(self, cursor: int, end: int) -> int | None:
        for index in range(cursor, end):
            if not is_blank(self.lines[index]):
                return index
        return None

    def _next_code_level(self, cursor: int, end: int, default: int) -> int:
        index = self._next_code_line(cursor, end)
        return default if index is None else self._level(index)

    def _has_body(self, cursor: int, end: int, level: int) -> bool:
        index = self._next_code_line(cursor, end)
        return index is not None and self._level(index) > level

    def _block_end(self, cursor: int, end: int, level: int) -> int:
        for index in iter_statement_starts(self.lines, cursor, end):
            if not is_blank(self.lines[index]) and self._level(index) <= level:
                return index
        return end

    def _opens_with_docstring(self, cursor: int) -> bool:
        line = self.lines[cursor]
        return not is_blank(line) and is_docstring(line)

    def _follows_decorator(self, cursor: int) -> bool:
        for index in range(cursor - 1, -1, -1):
            if not is_blank(self.lines[index]):
                return self.lines[index].lstrip().startswith("@")
        return False

    def _is_clause_line(self, line: str) -> bool:
        code = line.strip()
        word = first_word(code)
        if word not in CLAUSE_KEYWORDS:
            return False
        return word != "case" or find_top_level_colon(code) >= 0

    # -- driver step -----------------------------------------------------

    def _step(self, cursor: int, end: int, indent: int, floor: int = 0) -> Step:
        line = self.lines[cursor]
        if cursor in self.hoisted:
            return Step([], cursor + 1, indent)
        if is_blank(line):
            return self._blank(cursor, end, indent, floor)
        source = assemble_statement(self.lines, cursor, end)
        level = measure_indent(line, self.config)
        indent_text = line[: len(line) - len(line.lstrip())]
        directives = parse_directives(source.comment)
        statement = _Statement(
            source=source,
            level=level,
            indent_text=indent_text,
            body=source.code[len(indent_text) :],
            directives=directives,
            mock=directives.mock,
            range_end=end,
        )
        return self._statement(statement)

    def _blank(self, cursor: int, end: int, indent: int, floor: int = 0) -> Step:
        following = self._next_code_line(cursor + 1, end)
        if self._follows_decorator(cursor):
            return Step([], cursor + 1, indent)
        if following is None:
            # every block opened inside this range has ended
            level = floor
        else:
            next_level = self._level(following)
            if self._is_clause_line(self.lines[following]):
                if indent <= next_level:
                    return Step([], cursor + 1, indent)
                level = indent
            else:
                level = min(indent, next_level)
        return Step([self._at(level, probe(cursor), cursor)], cursor + 1, indent)

    def _statement(self, st: _Statement) -> Step:
        construct = classify(st.body)
        if isinstance(construct, Decorator):
            self.counts.add("Decorator")
            return Step(
                self._code(st.source.text, st.source.start, st.source.end),
                st.source.end + 1,
                st.level,
            )
        if (
            isinstance(construct, DefHeader)
            and st.mock is not None
            and first_word(st.body) != "async"
        ):
            self.counts.add("MockedDef")
            return self._mocked_def(st, construct)
        body, replaced = substitute_blocking_calls(
            st.body,
            line=st.line,
            directives=st.directives,
            next_site=self._next_site,
            call_limit=self.call_limit,
        )
        if replaced:
            st = replace(st, body=body, mock=None, guarded=True)
            construct = classify(body)
        return self._dispatch(st, construct)

    def _dispatch(self, st: _Statement, construct: Construct) -> Step:
        self.counts.add(type(construct).__name__)
        if isinstance(construct, AugmentedAssignment):
            return self._augmented(st, construct)
        if isinstance(construct, Assignment):
            return self._assignment(st, construct.target, construct.value_start)
        if isinstance(construct, AnnotatedAssignment):
            return self._assignment(st, construct.target, construct.value_start)
        if isinstance(construct, PrintCall):
            return self._print(st, construct)
        if isinstance(construct, ReturnStatement):
            return self._return(st, construct)
        if isinstance(construct, (ForHeader, DefHeader, CompoundHeader)):
            return self._header(st, construct)
        if isinstance(construct, InlineCompound):
            return self._inline(st, construct)
        if isinstance(construct, IgnorableStatement):
            return self._ignorable(st)
        return self._plain(st)

    # -- shared pieces ---------------------------------------------------

    def _probe(self, st: _Statement, payload: str | None = None, level: int | None = None) -> GeneratedLine:
        return self._at(st.level if level is None else level, probe(st.line, payload), st.line)

    def _interior(self, st: _Statement, level: int) -> list[GeneratedLine]:
        if not st.interior_probes:
            return []
        return [self._at(level, probe(index), index) for index in st.source.interior]

    def _limit_guard(self, st: _Statement, level: int) -> list[GeneratedLine]:
        if st.directives.limit is None or st.guarded:
            return []
        call = guard_call(self._next_site(), st.line, st.directives.limit)
        return [self._at(level, call, st.line)]

    def _own_code(self, st: _Statement, body: str | None = None) -> list[GeneratedLine]:
        text = st.indent_text + (st.body if body is None else body)
        return self._code(text, st.source.start, st.source.end)

    def _mocked_value(self, st: _Statement, value: str) -> str:
        return value if st.mock is None else f" ({st.mock})"

    # -- case handlers ---------------------------------------------------

    def _assignment(self, st: _Statement, target: str, value_start: int) -> Step:
        body = st.body[:value_start] + self._mocked_value(st, st.body[value_start:])
        lines = self._limit_guard(st, st.level)
        lines.extend(self._own_code(st, body))
        lines.append(self._probe(st, target))
        lines.extend(self._interior(st, st.level))
        return Step(lines, st.source.end + 1, st.level)

    def _augmented(self, st: _Statement, construct: AugmentedAssignment) -> Step:
        temp = f"_clem_aug_{self._next_id()}"
        value = st.body[construct.value_start :].strip() if st.mock is None else st.mock
        target, operator = construct.target, construct.operator
        lines = self._limit_guard(st, st.level)
        lines.extend(self._own_code(st, f"{temp} = ({value})"))
        lines.append(self._probe(st, f"{target} {operator} {temp}"))
        lines.append(self._at(st.level, f"{target} {operator}= {temp}", st.line))
        lines.extend(self._interior(st, st.level))
        return Step(lines, st.source.end + 1, st.level)

    def _print(self, st: _Statement, construct: PrintCall) -> Step:
        args = st.body[construct.open_paren + 1 : construct.close_paren]
        comma = find_unquoted_char(args, ",")
        first = args if comma < 0 else args[:comma]
        rest = "" if comma < 0 else args[comma:]
        tag = probe_tag(st.line)
        stripped = first.strip()
        if not stripped:
            spliced = tag + rest
        elif stripped.startswith("*") or _KEYWORD_ARGUMENT_RE.match(stripped):
            spliced = f"{tag}, {args}"
        else:
            spliced = f"{tag} + str({first})" + rest
        body = (
            st.body[: construct.open_paren + 1]
            + spliced
            + st.body[construct.close_paren :]
        )
        lines = self._limit_guard(st, st.level)
        lines.extend(self._own_code(st, body))
        lines.extend(self._interior(st, st.level))
        return Step(lines, st.source.end + 1, st.level)

    def _return(self, st: _Statement, construct: ReturnStatement) -> Step:
        lines = self._limit_guard(st, st.level)
        lines.extend(self._interior(st, st.level))
        value = construct.value if st.mock is None else st.mock
        if value:
            temp = f"_clem_ret_{self._next_id()}"
            lines.extend(self._own_code(st, f"{temp} = ({value})"))
            lines.append(self._probe(st, temp))
            lines.append(self._at(st.level, f"return {temp}", st.line))
        else:
            lines.append(self._probe(st))
            lines.append(self._at(st.level, "return", st.line))
        next_indent = self._next_code_level(st.source.end + 1, st.range_end, st.level)
        return Step(lines, st.source.end + 1, next_indent)

    def _ignorable(self, st: _Statement) -> Step:
        lines = self._limit_guard(st, st.level)
        lines.extend(self._interior(st, st.level))
        lines.extend(self._own_code(st))
        next_indent = self._next_code_level(st.source.end + 1, st.range_end, st.level)
        return Step(lines, st.source.end + 1, next_indent)

    def _plain(self, st: _Statement) -> Step:
        body = st.body
        if st.mock is not None and not _starts_with_keyword(body):
            body = f"({st.mock})"
        lines = self._limit_guard(st, st.level)
        lines.extend(self._own_code(st, body))
        lines.append(self._probe(st))
        lines.extend(self._interior(st, st.level))
        return Step(lines, st.source.end + 1, st.level)

    # -- block headers ---------------------------------------------------

    def _branch_marks(self, st: _Statement, construct: Construct) -> list[GeneratedLine]:
        if isinstance(construct, ForHeader):
            return [self._at(st.level, mark_call(st.line), st.line)]
        if not isinstance(construct, CompoundHeader):
            return []
        if construct.keyword == "while":
            return [self._at(st.level, mark_call(st.line), st.line)]
        if construct.keyword != "if":
            return []
        keys = [st.line, *self._sibling_branches(st)]
        return [self._at(st.level, mark_call(key), st.line) for key in keys]

    def _sibling_branches(self, st: _Statement) -> list[int]:
        siblings: list[int] = []
        for index in iter_statement_starts(self.lines, st.source.end + 1, st.range_end):
            line = self.lines[index]
            if is_blank(line):
                continue
            level = self._level(index)
            if level > st.level:
                continue
            if level == st.level and first_word(line.strip()) in ("elif", "else"):
                siblings.append(index)
                continue
            break
        return siblings

    def _header_parts(
        self, st: _Statement, construct: Construct
    ) -> tuple[list[GeneratedLine], list[GeneratedLine], list[GeneratedLine]]:
        """Lines before the header, the header itself and the block prologue."""
        body_level = st.level + 1
        before = self._branch_marks(st, construct)
        prologue: list[GeneratedLine] = []
        if isinstance(construct, ForHeader):
            temp = f"_clem_iter_{self._next_id()}"
            before.extend(self._own_code(st, f"{temp} = {construct.iterable}"))
            before.append(self._probe(st, temp))
            header = [GeneratedLine(st.indent_text + construct.head + temp + construct.tail, st.line)]
            prologue.append(self._at(body_level, enter_call(st.line), st.line))
        elif isinstance(construct, DefHeader):
            header = self._own_code(st)
            prologue.extend(
                self._at(body_level, param_probe(st.line, name), st.line)
                for name in construct.params
            )
        else:
            header = self._own_code(st)
            if isinstance(construct, CompoundHeader):
                if construct.probed:
                    before.append(self._probe(st))
                if construct.is_branch:
                    prologue.append(self._at(body_level, enter_call(st.line), st.line))
        prologue.extend(self._limit_guard(st, body_level))
        prologue.extend(self._interior(st, body_level))
        return before, header, prologue

    def _header(self, st: _Statement, construct: Construct) -> Step:
        before, header, prologue = self._header_parts(st, construct)
        body_level = st.level + 1
        lines = before + header
        if self._has_body(st.source.end + 1, st.range_end, st.level):
            return Step(lines, st.source.end + 1, body_level, prologue=prologue)
        lines.extend(prologue or [self._at(body_level, "pass", st.line)])
        return Step(lines, st.source.end + 1, body_level)

    def _inline(self, st: _Statement, construct: InlineCompound) -> Step:
        header_code = st.body[: construct.colon + 1]
        inline_code = st.body[construct.colon + 1 :].lstrip()
        header_construct = classify(header_code)
        if not isinstance(header_construct, (ForHeader, DefHeader, CompoundHeader)):
            header_construct = CompoundHeader(keyword=first_word(header_code))
        header_st = replace(st, body=header_code, directives=Directives(), mock=None)
        before, header, prologue = self._header_parts(header_st, header_construct)
        body_level = st.level + 1
        inline_source = LogicalStatement(
            start=st.source.start,
            end=st.source.end,
            lines=tuple(inline_code.split("\n")),
            code=inline_code,
            comment=st.source.comment,
            returned_previously=first_word(inline_code) == "return",
        )
        inline_st = replace(
            st,
            source=inline_source,
            level=body_level,
            indent_text=render_indent(body_level, self.config),
            body=inline_code,
            interior_probes=False,
        )
        inner = self._dispatch(inline_st, classify(inline_code))
        lines = before + header + prologue + inner.lines + (inner.prologue or [])
        return Step(lines, st.source.end + 1, st.level)

    def _mocked_def(self, st: _Statement, construct: DefHeader) -> Step:
        body_start = st.source.end + 1
        body_level = st.level + 1
        block_end = self._block_end(body_start, st.range_end, st.level)
        has_body = self._has_body(body_start, block_end, st.level)
        lines = self._code(st.source.text, st.source.start, st.source.end)
        lines.extend(self._limit_guard(st, body_level))
        if has_body:
            lines.extend(GeneratedLine(self.lines[index], index) for index in range(body_start, block_end))
        else:
            lines.append(self._at(body_level, "pass", st.line))
        shadow = f"_clem_mock_{self._next_id()}"
        shadow_header = re.sub(
            rf"\bdef\s+{re.escape(construct.name)}\b", f"def {shadow}", st.source.text, count=1
        )
        lines.extend(self._code(shadow_header, st.source.start, st.source.end))
        prologue = [
            self._at(body_level, param_probe(st.line, name), st.line) for name in construct.params
        ]
        prologue.extend(self._interior(st, body_level))
        if has_body:
            lines.extend(self.rewrite_range(body_start, block_end, body_level, prologue=prologue))
        else:
            lines.extend(prologue or [self._at(body_level, "pass", st.line)])
        lines.append(self._at(st.level, f"{shadow}({st.mock})", st.line))
        return Step(lines, block_end, st.level)


def _starts_with_keyword(code: str) -> bool:
    word = first_word(code)
    return bool(word) and word in _STATEMENT_KEYWORDS


_STATEMENT_KEYWORDS = frozenset(
    {"import", "from", "del", "global", "nonlocal", "assert", "yield", "await",
     "lambda", "not", "raise", "pass", "break", "continue", "return"}
)


def split_lines(source_text: str) -> list[str]:
    return _LINE_SPLIT_RE.split(source_text)


def _future_imports(lines: Sequence[str]) -> list[int]:
    return [
        index
        for index, line in enumerate(lines)
        if _FUTURE_IMPORT_RE.match(line) and find_unquoted_char(line, "(") < 0
    ]


def instrument(
    source_text: str,
    config: IndentConfig | None = None,
    *,
    call_limit: int = DEFAULT_CALL_LIMIT,
) -> GeneratedProgram:
    """Rewrite ``source_text`` into an observable program."""
    config = config or IndentConfig()
    lines = split_lines(source_text)
    future = _future_imports(lines)
    rewriter = Rewriter(lines, config, call_limit=call_limit, hoisted=frozenset(future))
    generated: list[GeneratedLine] = [GeneratedLine(lines[index], index) for index in future]
    generated.extend(GeneratedLine(text) for text in PREAMBLE_LINES)
    generated.extend(rewriter.rewrite())
    line_map = LineIndexMap()
    for index, line in enumerate(generated):
        if line.origin is not None:
            line_map.record(index, line.origin)
    logger.debug(
        "instrumented %d source lines into %d generated lines %s",
        len(lines),
        len(generated),
        rewriter.counts.by_kind,
    )
    return GeneratedProgram(
        text="\n".join(line.text for line in generated) + "\n",
        line_map=line_map,
        source_lines=tuple(SourceLine(index, text) for index, text in enumerate(lines)),
        preamble_length=len(future) + len(PREAMBLE_LINES),
    )
