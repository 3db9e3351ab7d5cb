from __future__ import annotations

import io
import sys

import pytest

from clem.exceptions import SpawnError
from clem.harness import (
    CancellationHandle,
    OutputCollector,
    ProbeStreamSplitter,
    RunState,
    execute,
)
from clem.model import GeneratedProgram, LineResult
from clem.rewriter import instrument
from clem.source_map import LineIndexMap


class _FakeProc:
    def __init__(self, stdout=b"", stderr=b"", returncode: int = 0) -> None:
        self.stdout = stdout if not isinstance(stdout, bytes) else io.BytesIO(stdout)
        self.stderr = stderr if not isinstance(stderr, bytes) else io.BytesIO(stderr)
        self.returncode: int | None = None
        self._exit_code = returncode
        self.killed = False
        self.pid = 4242

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


class _EndlessStream:
    def __init__(self, data: bytes, on_read=None) -> None:
        self.data = data
        self.on_read = on_read
        self.closed = False

    def read(self, size: int) -> bytes:
        if self.on_read is not None:
            self.on_read()
        return self.data

    def close(self) -> None:
        self.closed = True


class _StepClock:
    def __init__(self, step_ns: int = 1_000_000) -> None:
        self.now = 0
        self.step_ns = step_ns

    def get_mark(self) -> int:
        self.now += self.step_ns
        return self.now


def _factory(proc: _FakeProc, calls: list | None = None):
    def _make(argv, **kwargs):
        if calls is not None:
            calls.append((argv, kwargs))
        return proc

    return _make


def test_splitter_rejoins_chunk_boundaries() -> None:
    splitter = ProbeStreamSplitter()
    assert splitter.feed("0:a\n1") == []
    assert splitter.feed(":b\n2:c") == ["0:a", "1:b"]
    assert splitter.feed("\n") == []
    assert splitter.flush() == ["2:c"]
    assert splitter.flush() == []


def test_splitter_keeps_multiline_payloads_together() -> None:
    splitter = ProbeStreamSplitter()
    assert splitter.feed("0:line one\nline two\n1:x\n") == ["0:line one\nline two"]
    assert splitter.flush() == ["1:x"]


def test_collector_fuses_stdout() -> None:
    collector = OutputCollector()
    collector.feed_stdout("0:a\n1:")
    collector.feed_stdout("b\n0:c\n")
    assert collector.finish(0) == [LineResult(0, "a  c"), LineResult(1, "b")]


def test_collector_rewrites_guard_violation() -> None:
    collector = OutputCollector()
    collector.feed_stdout("0:a\n3:\n5:b\n")
    collector.feed_stderr(
        'Traceback (most recent call last):\n  File "<string>", line 40, in <module>\n'
        "_ClemGuardError: ClemExcep3:call limit of 2 reached\n"
    )
    assert collector.finish(1) == [
        LineResult(0, "a"),
        LineResult(1, ""),
        LineResult(2, ""),
        LineResult(3, "call limit of 2 reached", is_error=True),
        LineResult(5, "b"),
    ]
    assert collector.guard_tripped


def test_collector_maps_traceback_through_line_map() -> None:
    program = instrument("a = 1\nb = a / 0")
    failing = program.lines.index("b = a / 0")
    collector = OutputCollector(program)
    collector.feed_stdout("0:1\n")
    collector.feed_stderr(
        "Traceback (most recent call last):\n"
        f'  File "<string>", line {failing + 1}, in <module>\n'
        "ZeroDivisionError: division by zero\n"
    )
    assert collector.finish(1) == [
        LineResult(0, "1"),
        LineResult(1, "ZeroDivisionError: division by zero", is_error=True),
    ]


def test_collector_prefers_program_frames_over_library_frames() -> None:
    program = instrument("import json\njson.loads('{')")
    failing = program.lines.index("json.loads('{')")
    collector = OutputCollector(program)
    collector.feed_stderr(
        "Traceback (most recent call last):\n"
        f'  File "<string>", line {failing + 1}, in <module>\n'
        '  File "/usr/lib/python3/json/__init__.py", line 346, in loads\n'
        "json.decoder.JSONDecodeError: Expecting property name: line 1 column 2 (char 1)\n"
    )
    results = collector.finish(1)
    assert [(result.line, result.is_error) for result in results] == [(0, False), (1, True)]


def test_collector_falls_back_to_nearest_probe() -> None:
    program = GeneratedProgram(
        text='x = 1\nprint("0:" + str(x))\nboom()\n', line_map=LineIndexMap()
    )
    collector = OutputCollector(program)
    collector.feed_stderr(
        'Traceback (most recent call last):\n  File "<string>", line 3, in <module>\n'
        "NameError: name 'boom' is not defined\n"
    )
    assert collector.finish(1) == [
        LineResult(0, "NameError: name 'boom' is not defined", is_error=True)
    ]


def test_collector_maps_bare_program_text_through_its_probes() -> None:
    text = instrument("x = 1\ny = undefined_name\n").text
    failing = text.split("\n").index("y = undefined_name")
    collector = OutputCollector(text)
    collector.feed_stdout("0:1\n")
    collector.feed_stderr(
        "Traceback (most recent call last):\n"
        f'  File "<string>", line {failing + 1}, in <module>\n'
        "NameError: name 'undefined_name' is not defined\n"
    )
    assert collector.finish(1) == [
        LineResult(0, "1"),
        LineResult(1, "NameError: name 'undefined_name' is not defined", is_error=True),
    ]


def test_collector_without_program_cannot_attribute_tracebacks() -> None:
    collector = OutputCollector()
    collector.feed_stderr(
        'Traceback (most recent call last):\n  File "<string>", line 40, in <module>\n'
        "ValueError: bad\n"
    )
    assert collector.finish(1) == [
        LineResult(0, "internal error: ValueError: bad", is_error=True)
    ]


def test_collector_uses_sentinel_for_unattributable_errors() -> None:
    collector = OutputCollector()
    collector.feed_stderr("Fatal Python error: something broke\n")
    assert collector.finish(1) == [
        LineResult(0, "internal error: Fatal Python error: something broke", is_error=True)
    ]


def test_collector_ignores_stderr_noise_of_clean_runs() -> None:
    collector = OutputCollector()
    collector.feed_stdout("0:ok\n")
    collector.feed_stderr("note: cache miss\n")
    assert collector.finish(0) == [LineResult(0, "ok")]


def test_collector_timeout_entry_follows_last_output() -> None:
    collector = OutputCollector()
    collector.feed_stdout("2:a\n4:b\n")
    collector.mark_timed_out(250)
    results = collector.finish(None)
    assert results[-1] == LineResult(5, "Timed out after 250 ms", is_error=True)


def test_collector_timeout_without_output_uses_line_zero() -> None:
    collector = OutputCollector()
    collector.mark_timed_out(5)
    assert collector.finish(None) == [LineResult(0, "Timed out after 5 ms", is_error=True)]


def test_collector_finish_is_idempotent() -> None:
    collector = OutputCollector()
    collector.feed_stdout("0:a\n")
    first = collector.finish(0)
    assert not collector.feed_stdout("1:b\n")
    assert collector.finish(0) is first


def test_cancelled_collector_discards_everything() -> None:
    collector = OutputCollector()
    collector.feed_stdout("0:a\n")
    collector.cancel.request_cancel()
    assert not collector.feed_stdout("1:b\n")
    assert collector.finish(0) == []
    assert collector.chunks == ()


def test_execute_with_fake_process() -> None:
    calls: list = []
    proc = _FakeProc(stdout=b"0:1\n1:2\n", returncode=0)
    outcome = execute("program", timeout_ms=1000, process_factory=_factory(proc, calls))
    assert outcome.state is RunState.COMPLETED
    assert outcome.results == [LineResult(0, "1"), LineResult(1, "2")]
    argv, kwargs = calls[0]
    assert argv == [sys.executable, "-u", "-c", "program"]
    assert kwargs["bufsize"] == 0
    assert proc.stdout.closed and proc.stderr.closed


def test_execute_reports_crash() -> None:
    proc = _FakeProc(
        stdout=b"0:1\n",
        stderr=b'Traceback (most recent call last):\n  File "<string>", line 1\nValueError: bad\n',
        returncode=1,
    )
    outcome = execute("program", timeout_ms=1000, process_factory=_factory(proc))
    assert outcome.state is RunState.CRASHED
    assert outcome.returncode == 1
    assert outcome.results[-1].is_error


def test_execute_decodes_multibyte_characters_split_across_reads() -> None:
    payload = "0:héllo\n".encode("utf-8")
    pieces = [payload[:4], payload[4:], b""]

    class _Chunked:
        def read(self, size: int) -> bytes:
            return pieces.pop(0)

        def close(self) -> None:
            pass

    proc = _FakeProc(stdout=_Chunked())
    outcome = execute("program", timeout_ms=1000, process_factory=_factory(proc))
    assert outcome.results == [LineResult(0, "héllo")]


def test_execute_times_out_and_kills() -> None:
    proc = _FakeProc(stdout=_EndlessStream(b"0:tick\n"))
    outcome = execute(
        "program",
        timeout_ms=10,
        process_factory=_factory(proc),
        clock=_StepClock(),
        poll_interval_s=0,
    )
    assert outcome.state is RunState.TIMED_OUT
    assert proc.killed
    assert outcome.results == [
        LineResult(0, "tick"),
        LineResult(1, "Timed out after 10 ms", is_error=True),
    ]


def test_execute_cancelled_mid_run_discards_output() -> None:
    cancel = CancellationHandle()
    proc = _FakeProc(stdout=_EndlessStream(b"0:x\n", on_read=cancel.request_cancel))
    outcome = execute(
        "program", timeout_ms=1000, cancel=cancel, process_factory=_factory(proc)
    )
    assert outcome.state is RunState.CANCELLED
    assert outcome.results == []
    assert proc.killed


def test_execute_cancelled_before_start_never_spawns() -> None:
    cancel = CancellationHandle()
    cancel.request_cancel()
    calls: list = []
    outcome = execute(
        "program", timeout_ms=1000, cancel=cancel, process_factory=_factory(_FakeProc(), calls)
    )
    assert outcome.state is RunState.CANCELLED
    assert calls == []


def test_execute_spawn_failure_raises() -> None:
    def _broken(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    with pytest.raises(SpawnError):
        execute("program", timeout_ms=1000, process_factory=_broken)


def test_execute_with_missing_interpreter_raises() -> None:
    with pytest.raises(SpawnError):
        execute("x = 1", timeout_ms=1000, interpreter="/nonexistent/clem-python")
