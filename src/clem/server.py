from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path
from typing import Callable, Sequence
from urllib.parse import unquote, urlparse

from pygls.lsp.server import LanguageServer
from pydantic import ValidationError
from lsprotocol.types import (
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_INLAY_HINT,
    Diagnostic,
    DiagnosticSeverity,
    Hover,
    HoverParams,
    InlayHint,
    InlayHintParams,
    MarkupContent,
    MarkupKind,
    MessageType,
    Position,
    PublishDiagnosticsParams,
    Range,
    ShowMessageParams,
)

from clem import __version__
from clem.config import RunConfig, load_run_config
from clem.exceptions import ClemError
from clem.harness import RunState, execute
from clem.invariants import never
from clem.model import LineResult
from clem.rewriter import instrument, split_lines
from clem.schema import LineResultDTO, RunRequest, RunResponse
from clem.sessions import Debouncer, DocumentSessionRegistry

logger = logging.getLogger(__name__)

RUN_COMMAND = "clem.run"
HINT_WIDTH = 80


class ClemLanguageServer(LanguageServer):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.registry = DocumentSessionRegistry()
        self.debouncer = Debouncer(RunConfig().debounce_ms / 1000)

    def project_root(self) -> Path | None:
        root_path = self.workspace.root_path
        return Path(root_path) if root_path else None

    def run_config(self) -> RunConfig:
        return load_run_config(root=self.project_root())


server = ClemLanguageServer("clem", __version__)


def _require_payload(payload: object, *, command: str) -> dict[str, object]:
    if payload is None:
        never("missing command payload", command=command)
    if not isinstance(payload, dict):
        never(
            "invalid command payload type",
            command=command,
            payload_type=type(payload).__name__,
        )
    return payload


def _uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


def _truncate(value: str, width: int = HINT_WIDTH) -> str:
    if len(value) <= width:
        return value
    return value[: width - 3] + "..."


def _line_length(lines: Sequence[str], line: int) -> int:
    return len(lines[line]) if 0 <= line < len(lines) else 0


def _in_document(result: LineResult, lines: Sequence[str]) -> bool:
    return bool(lines) and result.line >= 0


def _clamp(line: int, lines: Sequence[str]) -> int:
    # A timeout entry may land one line past the end of the document.
    return min(line, len(lines) - 1)


def _inlay_hints_for(
    results: Sequence[LineResult],
    lines: Sequence[str],
    start_line: int = 0,
    end_line: int | None = None,
) -> list[InlayHint]:
    last = len(lines) - 1 if end_line is None else end_line
    hints: list[InlayHint] = []
    for result in results:
        if not result.value or not _in_document(result, lines):
            continue
        line = _clamp(result.line, lines)
        if line < start_line or line > last:
            continue
        hints.append(
            InlayHint(
                position=Position(line=line, character=_line_length(lines, line)),
                label=_truncate(result.value),
                padding_left=True,
            )
        )
    return hints


def _diagnostics_for(results: Sequence[LineResult], lines: Sequence[str]) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    for result in results:
        if not result.is_error or not _in_document(result, lines):
            continue
        line = _clamp(result.line, lines)
        diagnostics.append(
            Diagnostic(
                range=Range(
                    start=Position(line=line, character=0),
                    end=Position(line=line, character=_line_length(lines, line)),
                ),
                message=result.value,
                severity=DiagnosticSeverity.Error,
                source="clem",
            )
        )
    return diagnostics


def _hover_text(results: Sequence[LineResult], line: int) -> str | None:
    for result in results:
        if result.line == line and result.value:
            prefix = "error: " if result.is_error else ""
            return prefix + result.value.replace("\\n", "\n")
    return None


def execute_run(payload: dict[str, object], root: Path | None = None) -> dict:
    """Instrument and run ``payload["text"]`` synchronously."""
    try:
        request = RunRequest.model_validate(payload)
    except ValidationError as exc:
        return RunResponse(state=RunState.IDLE.value, errors=[str(exc)]).model_dump()
    try:
        config = load_run_config(
            root=root,
            overrides={
                "indent_width": request.indent_width,
                "indent_mode": request.indent_mode,
                "timeout_ms": request.timeout_ms,
                "call_limit": request.call_limit,
            },
        )
        program = instrument(request.text, config.indent, call_limit=config.call_limit)
        outcome = execute(
            program, timeout_ms=config.timeout_ms, interpreter=config.interpreter
        )
    except ClemError as exc:
        return RunResponse(state=RunState.IDLE.value, errors=[str(exc)]).model_dump()
    return RunResponse(
        state=outcome.state.value,
        results=[
            LineResultDTO(line=result.line, value=result.value, is_error=result.is_error)
            for result in outcome.results
        ],
    ).model_dump()


async def run_document(ls: ClemLanguageServer, uri: str) -> None:
    document = ls.workspace.get_text_document(uri)
    source = document.source
    ticket = ls.registry.begin(uri)
    try:
        config = ls.run_config()
        program = instrument(source, config.indent, call_limit=config.call_limit)
        loop = asyncio.get_running_loop()
        outcome = await loop.run_in_executor(
            None,
            functools.partial(
                execute,
                program,
                timeout_ms=config.timeout_ms,
                cancel=ticket.cancel,
                interpreter=config.interpreter,
            ),
        )
    except ClemError as exc:
        logger.warning("run of %s failed: %s", uri, exc)
        ls.window_show_message(ShowMessageParams(type=MessageType.Error, message=str(exc)))
        return
    if not ls.registry.commit(ticket, outcome.results):
        return
    ls.text_document_publish_diagnostics(
        PublishDiagnosticsParams(
            uri=uri, diagnostics=_diagnostics_for(outcome.results, split_lines(source))
        )
    )
    ls.workspace_inlay_hint_refresh(None)


def _schedule_run(ls: ClemLanguageServer, uri: str) -> None:
    ls.debouncer.delay_s = ls.run_config().debounce_ms / 1000
    ls.debouncer.schedule(uri, lambda: asyncio.ensure_future(run_document(ls, uri)))


@server.command(RUN_COMMAND)
def execute_run_command(ls: ClemLanguageServer, payload: dict | None = None) -> dict:
    payload = _require_payload(payload, command=RUN_COMMAND)
    return execute_run(payload, ls.project_root())


@server.feature(TEXT_DOCUMENT_DID_OPEN)
def did_open(ls: ClemLanguageServer, params) -> None:
    _schedule_run(ls, params.text_document.uri)


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
def did_change(ls: ClemLanguageServer, params) -> None:
    _schedule_run(ls, params.text_document.uri)


@server.feature(TEXT_DOCUMENT_DID_SAVE)
def did_save(ls: ClemLanguageServer, params) -> None:
    _schedule_run(ls, params.text_document.uri)


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: ClemLanguageServer, params) -> None:
    uri = params.text_document.uri
    ls.debouncer.cancel(uri)
    ls.registry.close(uri)
    ls.text_document_publish_diagnostics(PublishDiagnosticsParams(uri=uri, diagnostics=[]))


@server.feature(TEXT_DOCUMENT_INLAY_HINT)
def inlay_hint(ls: ClemLanguageServer, params: InlayHintParams) -> list[InlayHint]:
    uri = params.text_document.uri
    lines = split_lines(ls.workspace.get_text_document(uri).source)
    return _inlay_hints_for(
        ls.registry.results(uri),
        lines,
        start_line=params.range.start.line,
        end_line=params.range.end.line,
    )


@server.feature(TEXT_DOCUMENT_HOVER)
def hover(ls: ClemLanguageServer, params: HoverParams) -> Hover | None:
    text = _hover_text(ls.registry.results(params.text_document.uri), params.position.line)
    if text is None:
        return None
    return Hover(contents=MarkupContent(kind=MarkupKind.PlainText, value=text))


def start(start_fn: Callable[[], None] | None = None) -> None:
    """Start the language server on stdio."""
    (start_fn or server.start_io)()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
