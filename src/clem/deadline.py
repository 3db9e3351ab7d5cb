from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
import time

from clem.invariants import never


class DeadlineClock(Protocol):
    def get_mark(self) -> int:
        """Return the current monotonic mark in nanoseconds."""


@dataclass(frozen=True)
class MonotonicClock:
    """Default wall-clock implementation used when no clock is injected."""

    def get_mark(self) -> int:
        return time.monotonic_ns()


@dataclass(frozen=True)
class Deadline:
    deadline_ns: int
    clock: DeadlineClock = field(default_factory=MonotonicClock)

    @classmethod
    def from_timeout_ms(
        cls, milliseconds: int, clock: DeadlineClock | None = None
    ) -> "Deadline":
        millis = int(milliseconds)
        if millis < 0:
            never("invalid timeout ms", ms=milliseconds)
        active = clock if clock is not None else MonotonicClock()
        return cls(deadline_ns=active.get_mark() + millis * 1_000_000, clock=active)

    def remaining_ns(self) -> int:
        return max(0, self.deadline_ns - self.clock.get_mark())

    def remaining_seconds(self) -> float:
        return self.remaining_ns() / 1_000_000_000

    def expired(self) -> bool:
        return self.clock.get_mark() >= self.deadline_ns
