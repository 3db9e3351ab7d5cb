"""Per-document run bookkeeping for long-lived front ends.

Only the most recently started run of a document may commit results, and a
run that was cancelled never commits, whatever order the processes finish
in.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import threading
from typing import Callable

from clem.harness import CancellationHandle
from clem.model import LineResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunTicket:
    uri: str
    token: int
    cancel: CancellationHandle = field(compare=False)


@dataclass
class _Session:
    token: int = 0
    ticket: RunTicket | None = None
    results: list[LineResult] = field(default_factory=list)


class DocumentSessionRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, _Session] = {}

    def begin(self, uri: str) -> RunTicket:
        """Start a run for ``uri``, cancelling the one in flight."""
        with self._lock:
            session = self._sessions.setdefault(uri, _Session())
            if session.ticket is not None:
                session.ticket.cancel.request_cancel()
            session.token += 1
            ticket = RunTicket(uri=uri, token=session.token, cancel=CancellationHandle())
            session.ticket = ticket
            return ticket

    def is_current(self, ticket: RunTicket) -> bool:
        with self._lock:
            session = self._sessions.get(ticket.uri)
            return session is not None and session.token == ticket.token

    def commit(self, ticket: RunTicket, results: list[LineResult]) -> bool:
        with self._lock:
            session = self._sessions.get(ticket.uri)
            if session is None or session.token != ticket.token or ticket.cancel.is_cancelled():
                logger.debug("discarding stale results for %s (token %d)", ticket.uri, ticket.token)
                return False
            session.results = list(results)
            session.ticket = None
            return True

    def results(self, uri: str) -> list[LineResult]:
        with self._lock:
            session = self._sessions.get(uri)
            return list(session.results) if session is not None else []

    def close(self, uri: str) -> None:
        with self._lock:
            session = self._sessions.pop(uri, None)
        if session is not None and session.ticket is not None:
            session.ticket.cancel.request_cancel()

    def __contains__(self, uri: object) -> bool:
        with self._lock:
            return uri in self._sessions


class Debouncer:
    """Trailing debounce on the running asyncio loop, keyed by document."""

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, callback: Callable[[], object]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.delay_s, self._fire, key, callback)

    def _fire(self, key: str, callback: Callable[[], object]) -> None:
        self._handles.pop(key, None)
        callback()

    def cancel(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def pending(self, key: str) -> bool:
        return key in self._handles
