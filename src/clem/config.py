from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import logging
import os
from pathlib import Path
from typing import Mapping, TypeAlias
import sys
import tomllib

from clem.exceptions import ConfigError
from clem.indentation import IndentConfig, IndentMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "clem.toml"
ENV_TIMEOUT_MS = "CLEM_TIMEOUT_MS"
ENV_INTERPRETER = "CLEM_INTERPRETER"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


@dataclass(frozen=True)
class RunConfig:
    indent: IndentConfig = IndentConfig()
    timeout_ms: int = 5000
    call_limit: int = 100
    interpreter: str = sys.executable
    debounce_ms: int = 300


@dataclass(frozen=True)
class DisplayConfig:
    normal_color: str = "bright_black"
    active_color: str = "cyan"
    error_color: str = "red"
    active_error_color: str = "bright_red"


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("could not read %s: %s", path, exc)
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        logger.warning("ignoring malformed %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: TomlTable, name: str) -> TomlTable:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def run_defaults(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), "run")


def display_defaults(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), "display")


def env_overrides(environ: Mapping[str, str] | None = None) -> TomlTable:
    environ = os.environ if environ is None else environ
    overrides: TomlTable = {}
    if environ.get(ENV_TIMEOUT_MS):
        overrides["timeout_ms"] = environ[ENV_TIMEOUT_MS]
    if environ.get(ENV_INTERPRETER):
        overrides["interpreter"] = environ[ENV_INTERPRETER]
    return overrides


def merge_payload(payload: Mapping[str, TomlValue], defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def _as_int(section: TomlTable, key: str, default: int, *, minimum: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {number}")
    return number


def _as_str(section: TomlTable, key: str, default: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string, got {value!r}")
    return value.strip()


def run_config_from(section: TomlTable) -> RunConfig:
    defaults = RunConfig()
    mode = _as_str(section, "indent_mode", defaults.indent.mode.value)
    try:
        indent_mode = IndentMode(mode)
    except ValueError as exc:
        raise ConfigError(f"indent_mode must be 'spaces' or 'tabs', got {mode!r}") from exc
    return RunConfig(
        indent=IndentConfig(
            width=_as_int(section, "indent_width", defaults.indent.width, minimum=1),
            mode=indent_mode,
        ),
        timeout_ms=_as_int(section, "timeout_ms", defaults.timeout_ms, minimum=1),
        call_limit=_as_int(section, "call_limit", defaults.call_limit, minimum=1),
        interpreter=_as_str(section, "interpreter", defaults.interpreter),
        debounce_ms=_as_int(section, "debounce_ms", defaults.debounce_ms, minimum=0),
    )


def load_run_config(
    root: Path | None = None,
    config_path: Path | None = None,
    overrides: Mapping[str, TomlValue] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """File values, then environment, then explicit ``overrides``."""
    section = merge_payload(env_overrides(environ), run_defaults(root, config_path))
    section = merge_payload(overrides or {}, section)
    return run_config_from(section)


def load_display_config(
    root: Path | None = None, config_path: Path | None = None
) -> DisplayConfig:
    section = display_defaults(root, config_path)
    defaults = DisplayConfig()
    return DisplayConfig(
        normal_color=_as_str(section, "normal_color", defaults.normal_color),
        active_color=_as_str(section, "active_color", defaults.active_color),
        error_color=_as_str(section, "error_color", defaults.error_color),
        active_error_color=_as_str(section, "active_error_color", defaults.active_error_color),
    )
