"""Execution harness: run a generated program and collect its probe output.

``OutputCollector`` holds all interpretation logic and can be driven
without a process. ``execute`` owns the process: it spawns the interpreter,
pumps both pipes with ``select`` while checking the deadline and the
cancellation flag, and funnels every ending (exit, timeout, cancellation)
into a single finalization path.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from enum import StrEnum
import logging
import re
import select
import subprocess
import sys
import threading
from typing import Callable

from clem.deadline import Deadline, DeadlineClock
from clem.exceptions import SpawnError
from clem.fuser import backfill, fuse, parse_tag
from clem.model import GeneratedProgram, LineResult, OutputChunk
from clem.preamble import GUARD_MESSAGE_RE
from clem.source_map import LineIndexMap, nearest_probe_before

logger = logging.getLogger(__name__)

_READ_SIZE = 65536
_DRAIN_MS = 500
_KILL_WAIT_S = 5.0
_TAG_BOUNDARY_RE = re.compile(r"\r?\n(?=\d+:)")
_PROGRAM_FRAME_RE = re.compile(r'File "<string>", line (?P<line>\d+)')
_ANY_LINE_RE = re.compile(r"\bline (?P<line>\d+)")
_TRACEBACK_MARKERS = ("Traceback (most recent call last)", "Error:", 'File "<string>"')
INTERNAL_ERROR_LABEL = "internal error"


class RunState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CRASHED = "crashed"


class CancellationHandle:
    """Cooperative cancellation flag shared between a run and its owner."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def request_cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RunOutcome:
    state: RunState
    results: list[LineResult]
    chunks: tuple[OutputChunk, ...] = ()
    returncode: int | None = None
    stderr: str = ""


class ProbeStreamSplitter:
    """Split an incremental stdout stream into tagged chunks.

    A chunk ends at a newline that is directly followed by ``<digits>:``.
    The last segment is held back until more text or ``flush`` arrives, so
    a boundary that straddles two reads is still found.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        parts = _TAG_BOUNDARY_RE.split(self._pending + text)
        self._pending = parts.pop()
        return parts

    def flush(self) -> list[str]:
        data, self._pending = self._pending, ""
        if data.endswith("\n"):
            data = data[:-1]
            if data.endswith("\r"):
                data = data[:-1]
        return [data] if data else []


@dataclass
class OutputCollector:
    """Interpret the output of one run.

    ``program`` is the generated program, or its bare text; bare text gets a
    source map rebuilt from its probes.
    """

    program: GeneratedProgram | str | None = None
    cancel: CancellationHandle = field(default_factory=CancellationHandle)

    def __post_init__(self) -> None:
        if isinstance(self.program, GeneratedProgram):
            self._line_map: LineIndexMap | None = self.program.line_map
            self._program_lines = self.program.lines
        elif self.program is not None:
            self._line_map = LineIndexMap.from_program_text(self.program)
            self._program_lines = self.program.split("\n")
        else:
            self._line_map = None
            self._program_lines = []
        self._splitter = ProbeStreamSplitter()
        self._chunks: list[OutputChunk] = []
        self._stderr: list[str] = []
        self._timeout_ms: int | None = None
        self._results: list[LineResult] | None = None
        self.guard_tripped = False

    @property
    def chunks(self) -> tuple[OutputChunk, ...]:
        return tuple(self._chunks)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    def feed_stdout(self, text: str) -> bool:
        if self.cancel.is_cancelled() or self._results is not None:
            return False
        self._chunks.extend(OutputChunk(part) for part in self._splitter.feed(text))
        return True

    def feed_stderr(self, text: str) -> bool:
        if self.cancel.is_cancelled() or self._results is not None:
            return False
        self._stderr.append(text)
        return True

    def mark_timed_out(self, timeout_ms: int) -> None:
        self._timeout_ms = timeout_ms

    def finish(self, returncode: int | None = None) -> list[LineResult]:
        """Finalize once; later calls return the same results."""
        if self._results is not None:
            return self._results
        if self.cancel.is_cancelled():
            self._chunks.clear()
            self._results = []
            return self._results
        self._chunks.extend(OutputChunk(part) for part in self._splitter.flush())
        if self._timeout_ms is not None:
            self._chunks.append(self._timeout_chunk(self._timeout_ms))
        error = self._classify_stderr(returncode)
        if error is not None:
            self._chunks.append(error)
        self._results = backfill(fuse(self._chunks))
        return self._results

    def _timeout_chunk(self, timeout_ms: int) -> OutputChunk:
        line = 0
        for chunk in reversed(self._chunks):
            parsed = parse_tag(chunk.text)
            if parsed is not None:
                line = parsed[0] + 1
                break
        return OutputChunk(f"{line}:Timed out after {timeout_ms} ms", is_error=True)

    def _classify_stderr(self, returncode: int | None) -> OutputChunk | None:
        text = self.stderr
        if not text.strip():
            return None
        guard = None
        for guard in GUARD_MESSAGE_RE.finditer(text):
            pass
        if guard is not None:
            self.guard_tripped = True
            logger.warning("guard tripped on line %s: %s", guard.group("line"), guard.group("message"))
            return OutputChunk(
                f"{guard.group('line')}:{guard.group('message').strip()}", is_error=True
            )
        if returncode in (0, None) and not any(marker in text for marker in _TRACEBACK_MARKERS):
            logger.info("ignoring stderr output of a clean run: %r", text[:200])
            return None
        message = _last_line(text)
        line = self._resolve_error_line(text)
        if line is None:
            logger.warning("could not attribute error output to a source line: %r", message)
            return OutputChunk(f"0:{INTERNAL_ERROR_LABEL}: {message}", is_error=True)
        return OutputChunk(f"{line}:{message}", is_error=True)

    def _resolve_error_line(self, text: str) -> int | None:
        matches = list(_PROGRAM_FRAME_RE.finditer(text)) or list(_ANY_LINE_RE.finditer(text))
        if not matches or self._line_map is None:
            return None
        generated = int(matches[-1].group("line")) - 1
        mapped = self._line_map.get(generated)
        if mapped is not None:
            return mapped
        return nearest_probe_before(self._program_lines, generated)


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""


class _PipePump:
    def __init__(self, proc: subprocess.Popen, collector: OutputCollector) -> None:
        self.proc = proc
        self._streams: dict[object, tuple[codecs.IncrementalDecoder, Callable[[str], bool]]] = {}
        for stream, feed in ((proc.stdout, collector.feed_stdout), (proc.stderr, collector.feed_stderr)):
            if stream is not None:
                decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                self._streams[stream] = (decoder, feed)
        self._closed = False

    def open(self) -> bool:
        return bool(self._streams)

    def readable(self, timeout: float) -> list[object]:
        streams = list(self._streams)
        try:
            by_fd = {stream.fileno(): stream for stream in streams}
        except (AttributeError, OSError, ValueError):
            return streams
        ready, _, _ = select.select(list(by_fd), [], [], max(0.0, timeout))
        return [by_fd[fd] for fd in ready]

    def read(self, stream) -> None:
        decoder, feed = self._streams[stream]
        data = stream.read(_READ_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                feed(tail)
            del self._streams[stream]
            return
        text = decoder.decode(data)
        if text:
            feed(text)

    def drain(self, deadline: Deadline, poll_interval_s: float) -> None:
        while self.open() and not deadline.expired():
            for stream in self.readable(min(poll_interval_s, deadline.remaining_seconds())):
                self.read(stream)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._streams.clear()
        for stream in (self.proc.stdout, self.proc.stderr):
            if stream is not None:
                stream.close()


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.kill()
    try:
        proc.wait(timeout=_KILL_WAIT_S)
    except subprocess.TimeoutExpired:
        logger.warning("process %s did not exit after kill", getattr(proc, "pid", "?"))


def execute(
    program: GeneratedProgram | str,
    *,
    timeout_ms: int,
    cancel: CancellationHandle | None = None,
    interpreter: str | None = None,
    process_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
    poll_interval_s: float = 0.05,
    clock: DeadlineClock | None = None,
) -> RunOutcome:
    """Run ``program`` and return its fused per-line results.

    Raises ``SpawnError`` when the interpreter cannot be started; every
    other failure is reported through the outcome.
    """
    text = program.text if isinstance(program, GeneratedProgram) else program
    cancel = cancel or CancellationHandle()
    if cancel.is_cancelled():
        return RunOutcome(state=RunState.CANCELLED, results=[])
    collector = OutputCollector(program, cancel=cancel)
    argv = [interpreter or sys.executable, "-u", "-c", text]
    deadline = Deadline.from_timeout_ms(timeout_ms, clock)
    try:
        proc = process_factory(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
    except OSError as exc:
        raise SpawnError(f"could not start interpreter {argv[0]!r}: {exc}") from exc
    logger.debug("spawned %s with a %d character program", argv[0], len(text))

    pump = _PipePump(proc, collector)
    state = RunState.RUNNING
    returncode: int | None = None
    try:
        while pump.open():
            if cancel.is_cancelled():
                state = RunState.CANCELLED
                break
            if deadline.expired():
                state = RunState.TIMED_OUT
                break
            for stream in pump.readable(min(poll_interval_s, deadline.remaining_seconds())):
                pump.read(stream)
        if state is RunState.RUNNING:
            try:
                returncode = proc.wait(timeout=max(deadline.remaining_seconds(), poll_interval_s))
            except subprocess.TimeoutExpired:
                state = RunState.TIMED_OUT
        if state is RunState.RUNNING and cancel.is_cancelled():
            state = RunState.CANCELLED
        if state in (RunState.TIMED_OUT, RunState.CANCELLED):
            _kill(proc)
            returncode = proc.poll()
        if state is RunState.TIMED_OUT:
            pump.drain(Deadline.from_timeout_ms(_DRAIN_MS, clock), poll_interval_s)
    finally:
        pump.close()

    if state is RunState.TIMED_OUT:
        logger.warning("run timed out after %d ms", timeout_ms)
        collector.mark_timed_out(timeout_ms)
    results = collector.finish(returncode)
    if cancel.is_cancelled():
        state = RunState.CANCELLED
    elif state is RunState.RUNNING:
        if returncode == 0 or collector.guard_tripped:
            state = RunState.COMPLETED
        else:
            state = RunState.CRASHED
    logger.debug("run finished: %s (returncode=%s)", state, returncode)
    return RunOutcome(
        state=state,
        results=results,
        chunks=collector.chunks,
        returncode=returncode,
        stderr=collector.stderr,
    )
