from __future__ import annotations

from clem.scanner import (
    StringState,
    assemble_statement,
    find_top_level_colon,
    find_top_level_keyword,
    find_unquoted_char,
    is_blank,
    iter_statement_starts,
    matching_bracket,
    scan_open_state,
    strip_comment,
)


def test_scan_counts_brackets_outside_strings() -> None:
    result = scan_open_state('call(a, "(", [1, 2')
    assert result.bracket_delta == 2
    assert result.string_state is StringState.NONE


def test_scan_ignores_brackets_in_comments() -> None:
    result = scan_open_state("x = 1  # (((")
    assert result.bracket_delta == 0
    assert result.comment_start == 7


def test_scan_carries_open_triple_quoted_string() -> None:
    first = scan_open_state('text = """start (')
    assert first.string_state is StringState.TRIPLE_DOUBLE
    assert first.bracket_delta == 0
    second = scan_open_state('end""" + (', first.string_state)
    assert second.string_state is StringState.NONE
    assert second.bracket_delta == 1


def test_scan_honours_escaped_quotes() -> None:
    result = scan_open_state(r"s = 'it\'s (' + x")
    assert result.string_state is StringState.NONE
    assert result.bracket_delta == 0


def test_strip_comment_keeps_hash_inside_strings() -> None:
    code, comment = strip_comment('x = "#not" # real  ')
    assert code == 'x = "#not" '
    assert comment == "real"


def test_is_blank_treats_comment_lines_as_blank() -> None:
    assert is_blank("")
    assert is_blank("   ")
    assert is_blank("    # note")
    assert not is_blank("x = 1  # note")


def test_find_unquoted_char_skips_nesting_and_strings() -> None:
    text = 'f(a, b), "c, d", e'
    assert find_unquoted_char(text, ",") == 7


def test_find_top_level_colon_skips_walrus_and_slices() -> None:
    assert find_top_level_colon("if (n := 3) > x[1:2]: y") == 20
    assert find_top_level_colon("x = {1: 2}") == -1


def test_find_top_level_keyword_checks_word_boundaries() -> None:
    text = "for index in items if inner in x:"
    assert find_top_level_keyword(text, "in", 3) == 10


def test_matching_bracket_handles_nested_and_quoted() -> None:
    text = 'print(f(")"), [1])'
    assert matching_bracket(text, 5) == len(text) - 1
    assert matching_bracket(text, 0) == -1


def test_assemble_statement_follows_open_brackets() -> None:
    lines = ["total = (1 +", "         2)  # sum", "next = 3"]
    statement = assemble_statement(lines, 0)
    assert (statement.start, statement.end) == (0, 1)
    assert statement.code == "total = (1 +\n         2)"
    assert statement.comment == "sum"
    assert list(statement.interior) == [1]


def test_assemble_statement_follows_backslash_and_strings() -> None:
    lines = ["x = 1 + \\", "    2", 'doc = """a', 'b"""', "y = 0"]
    assert assemble_statement(lines, 0).end == 1
    assert assemble_statement(lines, 2).end == 3


def test_assemble_statement_consumes_rest_when_unterminated() -> None:
    lines = ["x = [1,", "2,", "3"]
    statement = assemble_statement(lines, 0)
    assert statement.end == 2


def test_assemble_statement_flags_return() -> None:
    lines = ["    return (a,", "            b)"]
    assert assemble_statement(lines, 0).returned_previously
    assert not assemble_statement(["returned = 1"], 0).returned_previously


def test_iter_statement_starts_skips_continuations() -> None:
    lines = ["a = (1,", "2)", "", "b = 3"]
    assert list(iter_statement_starts(lines, 0)) == [0, 2, 3]
