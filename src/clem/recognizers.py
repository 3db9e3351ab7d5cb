"""Named statement recognizers.

Each recognizer looks at the code of one logical statement (indentation
removed, trailing comment removed) and returns a tagged variant or ``None``.
``classify`` applies them in dispatch priority order and always returns a
variant, falling back to ``PlainStatement``.
"""

from __future__ import annotations

from dataclasses import dataclass
import keyword
import re
from typing import Callable, Tuple, TypeAlias

import libcst as cst

from clem.scanner import (
    find_top_level_colon,
    find_top_level_keyword,
    find_unquoted_char,
    matching_bracket,
)

_TARGET = r"[A-Za-z_][\w]*(?:\s*\.\s*[A-Za-z_]\w*)*"
_ASSIGNMENT_RE = re.compile(rf"^(?P<target>{_TARGET})\s*=(?!=)")
_AUGMENTED_RE = re.compile(
    rf"^(?P<target>{_TARGET})\s*(?P<op>\*\*|//|>>|<<|[-+*/%@&|^])=(?!=)"
)
_ANNOTATED_RE = re.compile(rf"^(?P<target>{_TARGET})\s*:")
_PRINT_RE = re.compile(r"^print\s*\(")
_DEF_RE = re.compile(r"^(?:async\s+)?def\s+(?P<name>[A-Za-z_]\w*)\s*\(")
_FOR_RE = re.compile(r"^for\s")
_DOCSTRING_RE = re.compile(r"""^[rRuUbBfF]{0,2}(?:'''|\"\"\"|'|")""")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_]\w*$")

BRANCH_KEYWORDS = frozenset({"if", "elif", "else", "while", "for"})
COMPOUND_KEYWORDS = frozenset(
    {"if", "elif", "else", "while", "for", "with", "try", "except", "finally",
     "def", "class", "async", "match", "case"}
)
# Headers that never get a probe in front of them: clause continuations and
# control transfers whose value means nothing.
UNPROBED_HEADERS = frozenset(
    {"break", "continue", "pass", "except", "finally", "raise", "else", "elif", "case"}
)
IGNORABLE_KEYWORDS = frozenset({"break", "continue", "pass", "except", "finally", "raise"})
CLAUSE_KEYWORDS = frozenset({"elif", "else", "except", "finally", "case"})


@dataclass(frozen=True)
class Decorator:
    pass


@dataclass(frozen=True)
class Assignment:
    target: str
    value_start: int


@dataclass(frozen=True)
class AugmentedAssignment:
    target: str
    operator: str
    value_start: int


@dataclass(frozen=True)
class AnnotatedAssignment:
    target: str
    value_start: int


@dataclass(frozen=True)
class PrintCall:
    open_paren: int
    close_paren: int


@dataclass(frozen=True)
class ForHeader:
    head: str
    iterable: str
    tail: str


@dataclass(frozen=True)
class ReturnStatement:
    value: str


@dataclass(frozen=True)
class DefHeader:
    name: str
    params: Tuple[str, ...]


@dataclass(frozen=True)
class CompoundHeader:
    keyword: str

    @property
    def is_branch(self) -> bool:
        return self.keyword in BRANCH_KEYWORDS

    @property
    def probed(self) -> bool:
        return self.keyword not in UNPROBED_HEADERS


@dataclass(frozen=True)
class InlineCompound:
    colon: int


@dataclass(frozen=True)
class IgnorableStatement:
    keyword: str


@dataclass(frozen=True)
class PlainStatement:
    pass


Construct: TypeAlias = (
    Decorator
    | Assignment
    | AugmentedAssignment
    | AnnotatedAssignment
    | PrintCall
    | ForHeader
    | ReturnStatement
    | DefHeader
    | CompoundHeader
    | InlineCompound
    | IgnorableStatement
    | PlainStatement
)


def first_word(code: str) -> str:
    match = re.match(r"[A-Za-z_]\w*", code)
    return match.group(0) if match else ""


def _target(match: re.Match[str]) -> str:
    return re.sub(r"\s+", "", match.group("target"))


def _has_top_level_semicolon(code: str) -> bool:
    return find_unquoted_char(code, ";") >= 0


def recognize_decorator(code: str) -> Decorator | None:
    return Decorator() if code.startswith("@") else None


def recognize_assignment(code: str) -> Assignment | None:
    match = _ASSIGNMENT_RE.match(code)
    if match is None or keyword.iskeyword(first_word(code)):
        return None
    if _has_top_level_semicolon(code):
        return None
    return Assignment(target=_target(match), value_start=match.end())


def recognize_augmented(code: str) -> AugmentedAssignment | None:
    match = _AUGMENTED_RE.match(code)
    if match is None or keyword.iskeyword(first_word(code)):
        return None
    if _has_top_level_semicolon(code):
        return None
    return AugmentedAssignment(
        target=_target(match), operator=match.group("op"), value_start=match.end()
    )


def recognize_annotated(code: str) -> AnnotatedAssignment | None:
    match = _ANNOTATED_RE.match(code)
    if match is None or keyword.iskeyword(first_word(code)):
        return None
    if code.startswith(":=", match.end() - 1):
        return None
    equals = find_unquoted_char(code, "=", match.end())
    if equals < 0 or code.startswith("==", equals) or code[equals - 1] in "<>!":
        return None
    if _has_top_level_semicolon(code):
        return None
    return AnnotatedAssignment(target=_target(match), value_start=equals + 1)


def recognize_annotation_only(code: str) -> PlainStatement | None:
    """``name: Type`` declarations without a value."""
    match = _ANNOTATED_RE.match(code)
    if match is None or keyword.iskeyword(first_word(code)):
        return None
    if code.endswith(":") or code.startswith(":=", match.end() - 1):
        return None
    return PlainStatement()


def recognize_print(code: str) -> PrintCall | None:
    match = _PRINT_RE.match(code)
    if match is None:
        return None
    open_paren = match.end() - 1
    close_paren = matching_bracket(code, open_paren)
    if close_paren < 0 or code[close_paren + 1 :].strip():
        return None
    return PrintCall(open_paren=open_paren, close_paren=close_paren)


def recognize_for(code: str) -> ForHeader | None:
    if not _FOR_RE.match(code) or not code.endswith(":"):
        return None
    in_index = find_top_level_keyword(code, "in", len("for"))
    if in_index < 0:
        return None
    head_end = in_index + len("in")
    iterable = code[head_end:-1].strip()
    if not iterable:
        return None
    return ForHeader(head=code[:head_end] + " ", iterable=iterable, tail=":")


def recognize_return(code: str) -> ReturnStatement | None:
    if first_word(code) != "return":
        return None
    return ReturnStatement(value=code[len("return") :].strip())


def recognize_def(code: str) -> DefHeader | None:
    match = _DEF_RE.match(code)
    if match is None or not code.endswith(":"):
        return None
    open_paren = match.end() - 1
    close_paren = matching_bracket(code, open_paren)
    if close_paren < 0:
        return None
    params = _cst_parameter_names(code)
    if params is None:
        params = _text_parameter_names(code[open_paren + 1 : close_paren])
    if params and params[0] in ("self", "cls"):
        params = params[1:]
    return DefHeader(name=match.group("name"), params=params)


def recognize_header(code: str) -> CompoundHeader | None:
    if not code.endswith(":"):
        return None
    return CompoundHeader(keyword=first_word(code))


def recognize_inline_compound(code: str) -> InlineCompound | None:
    if first_word(code) not in COMPOUND_KEYWORDS:
        return None
    colon = find_top_level_colon(code)
    if colon < 0 or not code[colon + 1 :].strip():
        return None
    return InlineCompound(colon=colon)


def recognize_ignorable(code: str) -> IgnorableStatement | None:
    word = first_word(code)
    if word in IGNORABLE_KEYWORDS:
        return IgnorableStatement(keyword=word)
    return None


def is_docstring(code: str) -> bool:
    return bool(_DOCSTRING_RE.match(code.lstrip()))


_RECOGNIZERS: tuple[Callable[[str], Construct | None], ...] = (
    recognize_decorator,
    recognize_augmented,
    recognize_assignment,
    recognize_annotated,
    recognize_annotation_only,
    recognize_print,
    recognize_for,
    recognize_return,
    recognize_def,
    recognize_header,
    recognize_inline_compound,
    recognize_ignorable,
)


def classify(code: str) -> Construct:
    """Classify statement ``code`` (no indentation, no trailing comment)."""
    for recognizer in _RECOGNIZERS:
        construct = recognizer(code)
        if construct is not None:
            return construct
    return PlainStatement()


def _cst_parameter_names(header: str) -> Tuple[str, ...] | None:
    source = header.strip()
    if source.startswith("async"):
        source = source[len("async") :].lstrip()
    try:
        node = cst.parse_statement(source + " pass\n")
    except cst.ParserSyntaxError:
        return None
    if not isinstance(node, cst.FunctionDef):
        return None
    params = node.params
    names = [param.name.value for param in (*params.posonly_params, *params.params)]
    if isinstance(params.star_arg, cst.Param):
        names.append(params.star_arg.name.value)
    names.extend(param.name.value for param in params.kwonly_params)
    if params.star_kwarg is not None:
        names.append(params.star_kwarg.name.value)
    return tuple(names)


def _text_parameter_names(params_text: str) -> Tuple[str, ...]:
    names: list[str] = []
    rest = params_text
    while rest.strip():
        comma = find_unquoted_char(rest, ",")
        piece = rest if comma < 0 else rest[:comma]
        rest = "" if comma < 0 else rest[comma + 1 :]
        piece = piece.strip().lstrip("*").strip()
        for separator in ("=", ":"):
            cut = find_unquoted_char(piece, separator)
            if cut >= 0:
                piece = piece[:cut].strip()
        if _IDENTIFIER_RE.match(piece):
            names.append(piece)
    return tuple(names)
