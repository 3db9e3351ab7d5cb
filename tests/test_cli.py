from __future__ import annotations

import json
from pathlib import Path
import textwrap

from typer.testing import CliRunner

from clem import cli
from clem.config import DisplayConfig
from clem.model import LineResult


def _script(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "script.py"
    path.write_text(textwrap.dedent(text).lstrip("\n"))
    return path


def test_run_prints_annotated_source(tmp_path: Path) -> None:
    path = _script(
        tmp_path,
        """
        x = 2
        y = x * 21
        """,
    )
    result = CliRunner().invoke(cli.app, ["run", str(path)])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].startswith("x = 2")
    assert lines[0].endswith("# 2")
    assert lines[1].endswith("# 42")


def test_run_json_output(tmp_path: Path) -> None:
    path = _script(tmp_path, "value = 'a' + 'b'\n")
    result = CliRunner().invoke(cli.app, ["run", str(path), "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["state"] == "completed"
    assert payload["results"] == [{"line": 0, "value": "ab", "is_error": False}]
    assert payload["errors"] == []


def test_run_exits_one_on_crash(tmp_path: Path) -> None:
    path = _script(tmp_path, "a = 1\nb = a / 0\n")
    result = CliRunner().invoke(cli.app, ["run", str(path), "--json"])
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["state"] == "crashed"
    assert payload["results"][-1]["line"] == 1
    assert payload["results"][-1]["is_error"] is True


def test_run_exits_one_on_timeout(tmp_path: Path) -> None:
    path = _script(tmp_path, "while True:\n    pass\n")
    result = CliRunner().invoke(cli.app, ["run", str(path), "--json", "--timeout-ms", "300"])
    assert result.exit_code == 1
    assert json.loads(result.output)["state"] == "timed_out"


def test_run_exits_two_on_bad_configuration(tmp_path: Path) -> None:
    path = _script(tmp_path, "x = 1\n")
    (tmp_path / "clem.toml").write_text('[run]\nindent_mode = "zigzag"\n')
    result = CliRunner().invoke(cli.app, ["run", str(path)])
    assert result.exit_code == 2
    assert "indent_mode" in result.output


def test_run_reads_tab_flag(tmp_path: Path) -> None:
    path = _script(tmp_path, "if True:\n\tz = 3\n")
    result = CliRunner().invoke(cli.app, ["run", str(path), "--tabs", "--json"])
    assert result.exit_code == 0, result.output
    values = {entry["line"]: entry["value"] for entry in json.loads(result.output)["results"]}
    assert values[1] == "3"


def test_instrument_writes_program(tmp_path: Path) -> None:
    path = _script(tmp_path, "x = 1\n")
    output = tmp_path / "out.py"
    result = CliRunner().invoke(cli.app, ["instrument", str(path), "--output", str(output)])
    assert result.exit_code == 0, result.output
    text = output.read_text()
    assert 'print("0:" + str(x))' in text
    compile(text, str(output), "exec")


def test_instrument_prints_program(tmp_path: Path) -> None:
    path = _script(tmp_path, "x = 1\n")
    result = CliRunner().invoke(cli.app, ["instrument", str(path)])
    assert result.exit_code == 0
    assert "_clem_report" in result.output


def test_render_annotated_pads_and_handles_lines_past_the_end() -> None:
    rendered = cli.render_annotated(
        ["a = 1", "long_name = 2"],
        [LineResult(0, "1"), LineResult(2, "Timed out after 5 ms", is_error=True)],
        DisplayConfig(),
    )
    assert len(rendered) == 3
    assert rendered[0].startswith("a = 1        ")
    assert "# 1" in rendered[0]
    assert rendered[1] == "long_name = 2"
    assert "Timed out after 5 ms" in rendered[2]
