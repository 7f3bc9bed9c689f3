"""Step timeline recorded for every run."""

from __future__ import annotations

import time
from collections.abc import Callable

from snaptriage._types import TimelineEvent


class Timeline:
    """
    Collects start/ok/fail/skip markers with millisecond offsets.

    Example:
        >>> timeline = Timeline()
        >>> timeline.start("policy")
        >>> timeline.ok("policy")
        >>> [e.status for e in timeline.events]
        ['start', 'ok']
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._t0 = clock()
        self._started: dict[str, int] = {}
        self._events: list[TimelineEvent] = []

    def _now_ms(self) -> int:
        return int((self._clock() - self._t0) * 1000)

    def _add(self, step: str, status: str, message: str | None) -> None:
        now = self._now_ms()
        started = self._started.pop(step, None)
        duration = now - started if started is not None and status != "start" else None
        if status == "start":
            self._started[step] = now
        self._events.append(TimelineEvent(now, step, status, message, duration))

    def start(self, step: str, message: str | None = None) -> None:
        self._add(step, "start", message)

    def ok(self, step: str, message: str | None = None) -> None:
        self._add(step, "ok", message)

    def fail(self, step: str, message: str | None = None) -> None:
        self._add(step, "fail", message)

    def skip(self, step: str, message: str | None = None) -> None:
        self._add(step, "skip", message)

    @property
    def events(self) -> tuple[TimelineEvent, ...]:
        return tuple(self._events)

    def render(self) -> str:
        """One line per event, e.g. `[0.12s] sandbox.run -> ok (exit 0)`."""
        lines = []
        for e in self._events:
            suffix = f" ({e.message})" if e.message else ""
            lines.append(f"[{e.t_ms / 1000:.2f}s] {e.step} -> {e.status}{suffix}")
        return "\n".join(lines)
