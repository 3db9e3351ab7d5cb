from __future__ import annotations

from pathlib import Path
import sys
import textwrap

import pytest

from clem.config import (
    DisplayConfig,
    RunConfig,
    load_config,
    load_display_config,
    load_run_config,
    merge_payload,
)
from clem.exceptions import ConfigError
from clem.indentation import IndentMode


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "clem.toml"
    path.write_text(textwrap.dedent(text).strip() + "\n")
    return path


def test_defaults_without_file(tmp_path: Path) -> None:
    config = load_run_config(root=tmp_path, environ={})
    assert config == RunConfig()
    assert config.interpreter == sys.executable
    assert load_display_config(root=tmp_path) == DisplayConfig()


def test_run_section_is_read(tmp_path: Path) -> None:
    _write(
        tmp_path,
        """
        [run]
        indent_width = 2
        indent_mode = "tabs"
        timeout_ms = 750
        call_limit = 7
        debounce_ms = 0
        """,
    )
    config = load_run_config(root=tmp_path, environ={})
    assert config.indent.width == 2
    assert config.indent.mode is IndentMode.TABS
    assert config.timeout_ms == 750
    assert config.call_limit == 7
    assert config.debounce_ms == 0


def test_display_section_is_read(tmp_path: Path) -> None:
    _write(
        tmp_path,
        """
        [display]
        error_color = "magenta"
        """,
    )
    display = load_display_config(root=tmp_path)
    assert display.error_color == "magenta"
    assert display.normal_color == "bright_black"


def test_explicit_overrides_win_and_none_never_overrides(tmp_path: Path) -> None:
    _write(
        tmp_path,
        """
        [run]
        timeout_ms = 750
        call_limit = 7
        """,
    )
    config = load_run_config(
        root=tmp_path,
        overrides={"timeout_ms": 100, "call_limit": None},
        environ={"CLEM_TIMEOUT_MS": "300"},
    )
    assert config.timeout_ms == 100
    assert config.call_limit == 7


def test_environment_overrides_file(tmp_path: Path) -> None:
    _write(tmp_path, "[run]\ntimeout_ms = 750\n")
    config = load_run_config(
        root=tmp_path,
        environ={"CLEM_TIMEOUT_MS": "300", "CLEM_INTERPRETER": "/opt/python"},
    )
    assert config.timeout_ms == 300
    assert config.interpreter == "/opt/python"


def test_explicit_config_path(tmp_path: Path) -> None:
    other = tmp_path / "custom.toml"
    other.write_text("[run]\ncall_limit = 3\n")
    assert load_run_config(config_path=other, environ={}).call_limit == 3


def test_malformed_file_yields_defaults(tmp_path: Path) -> None:
    _write(tmp_path, "[run\nbroken")
    assert load_config(root=tmp_path) == {}
    assert load_run_config(root=tmp_path, environ={}) == RunConfig()


@pytest.mark.parametrize(
    "overrides",
    [
        {"indent_width": 0},
        {"indent_mode": "both"},
        {"timeout_ms": "soon"},
        {"call_limit": True},
        {"debounce_ms": -1},
        {"interpreter": ""},
    ],
)
def test_invalid_values_raise(tmp_path: Path, overrides: dict) -> None:
    with pytest.raises(ConfigError):
        load_run_config(root=tmp_path, overrides=overrides, environ={})


def test_merge_payload_skips_none() -> None:
    assert merge_payload({"a": None, "b": 2}, {"a": 1, "b": 1}) == {"a": 1, "b": 2}
