from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

import typer

from clem.config import DisplayConfig, load_display_config, load_run_config
from clem.exceptions import ClemError
from clem.harness import RunOutcome, RunState, execute
from clem.model import LineResult
from clem.rewriter import instrument, split_lines
from clem.schema import LineResultDTO, RunResponse

app = typer.Typer(add_completion=False)

_FAILED_STATES = (RunState.CRASHED, RunState.TIMED_OUT)


def _read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ClemError(f"could not read {path}: {exc}") from exc


def _fail(exc: ClemError) -> typer.Exit:
    typer.secho(f"clem: {exc}", err=True, fg=typer.colors.RED)
    return typer.Exit(code=2)


def render_annotated(
    lines: Sequence[str],
    results: Sequence[LineResult],
    display: DisplayConfig,
    active_line: int | None = None,
) -> list[str]:
    """Source lines with their results appended, styled with the display colours."""
    by_line = {result.line: result for result in results}
    width = max((len(line) for line in lines), default=0)
    rendered: list[str] = []
    for index, line in enumerate(lines):
        result = by_line.get(index)
        if result is None or not result.value:
            rendered.append(line)
            continue
        rendered.append(line.ljust(width) + "  " + _styled(result, display, index == active_line))
    for line in sorted(by_line):
        if line >= len(lines):
            rendered.append(" " * width + "  " + _styled(by_line[line], display, False))
    return rendered


def _styled(result: LineResult, display: DisplayConfig, active: bool) -> str:
    if result.is_error:
        color = display.active_error_color if active else display.error_color
    else:
        color = display.active_color if active else display.normal_color
    return typer.style(f"# {result.value}", fg=color)


def response_from(outcome: RunOutcome) -> RunResponse:
    return RunResponse(
        state=outcome.state.value,
        results=[
            LineResultDTO(line=result.line, value=result.value, is_error=result.is_error)
            for result in outcome.results
        ],
    )


@app.command()
def run(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    config: Optional[Path] = typer.Option(None, "--config"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms"),
    indent_width: Optional[int] = typer.Option(None, "--indent-width"),
    tabs: Optional[bool] = typer.Option(None, "--tabs/--spaces"),
    call_limit: Optional[int] = typer.Option(None, "--call-limit"),
    as_json: bool = typer.Option(False, "--json"),
    active_line: Optional[int] = typer.Option(None, "--active-line"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run a script and show the value of every line."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    root = path.resolve().parent
    try:
        run_config = load_run_config(
            root=root,
            config_path=config,
            overrides={
                "timeout_ms": timeout_ms,
                "indent_width": indent_width,
                "indent_mode": None if tabs is None else ("tabs" if tabs else "spaces"),
                "call_limit": call_limit,
            },
        )
        display = load_display_config(root=root, config_path=config)
        source = _read_source(path)
        program = instrument(source, run_config.indent, call_limit=run_config.call_limit)
        outcome = execute(
            program,
            timeout_ms=run_config.timeout_ms,
            interpreter=run_config.interpreter,
        )
    except ClemError as exc:
        raise _fail(exc) from exc
    if as_json:
        typer.echo(json.dumps(response_from(outcome).model_dump(), indent=2))
    else:
        for line in render_annotated(split_lines(source), outcome.results, display, active_line):
            typer.echo(line)
    if outcome.state in _FAILED_STATES:
        raise typer.Exit(code=1)


@app.command("instrument")
def instrument_command(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
    config: Optional[Path] = typer.Option(None, "--config"),
    call_limit: Optional[int] = typer.Option(None, "--call-limit"),
) -> None:
    """Print the instrumented program generated for a script."""
    try:
        run_config = load_run_config(
            root=path.resolve().parent,
            config_path=config,
            overrides={"call_limit": call_limit},
        )
        program = instrument(
            _read_source(path), run_config.indent, call_limit=run_config.call_limit
        )
    except ClemError as exc:
        raise _fail(exc) from exc
    if output is None:
        typer.echo(program.text, nl=False)
        return
    output.write_text(program.text, encoding="utf-8")
    typer.echo(f"Wrote {output}")


@app.command()
def lsp() -> None:
    """Start the language server on stdio."""
    from clem.server import start

    start()


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
