from __future__ import annotations

from clem.source_map import LineIndexMap, nearest_probe_before


def test_resolve_falls_back_to_identity() -> None:
    line_map = LineIndexMap({4: 1})
    assert line_map.resolve(4) == 1
    assert line_map.resolve(9) == 9
    assert line_map.get(9) is None


def test_from_program_text_attributes_statements_to_their_probes() -> None:
    text = "\n".join(
        [
            "import atexit",
            "x = 1",
            'print("0:" + str(x))',
            "y = x / 0",
            '    print("3:")',
            "z = 2",
            "w = z",
            'print("6:" + str(w))',
        ]
    )
    line_map = LineIndexMap.from_program_text(text)
    assert 0 not in line_map
    assert line_map.get(1) == 0
    assert line_map.get(2) == 0
    assert line_map.get(3) == 0
    assert line_map.get(4) == 3
    assert line_map.get(5) == 3
    assert line_map.get(6) == 6


def test_from_program_text_keeps_headers_on_the_probe_above() -> None:
    text = "\n".join(
        [
            "_clem_iter_1 = range(3)",
            'print("0:" + str(_clem_iter_1))',
            "for i in _clem_iter_1:",
            '    _clem_enter("0")',
            "    total = i",
            '    print("1:" + str(total))',
        ]
    )
    line_map = LineIndexMap.from_program_text(text)
    assert line_map.get(0) == 0
    assert line_map.get(2) == 0
    assert line_map.get(4) == 1


def test_nearest_probe_before() -> None:
    lines = ["x = 1", 'print("2:" + str(x))', "y = x / 0"]
    assert nearest_probe_before(lines, 2) == 2
    assert nearest_probe_before(lines, 0) is None
    assert nearest_probe_before(lines, 50) == 2
