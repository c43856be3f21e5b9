"""Bounded, ordered observer channel for log lines, progress and outcomes."""
from __future__ import annotations

import threading
from collections import deque
from typing import Protocol

import structlog
from pydantic import BaseModel

from bitforge.core.constants import (
    MAX_LOG_LINES,
    BuildTarget,
    EventKind,
    Outcome,
    PipelineStage,
    StreamOrigin,
)
from bitforge.core.types import EngineEvent, LogLine

logger = structlog.get_logger(__name__)


class LogSink(Protocol):
    """Anything that accepts output lines from a supervised process."""

    def log(
        self,
        text: str,
        origin: StreamOrigin = StreamOrigin.ENGINE,
        target: BuildTarget | None = None,
    ) -> None: ...


class ObserverState(BaseModel):
    """Latest-value view of the channel, independent of event eviction."""

    last_seq: int = 0
    total_lines: int = 0
    progress: float = 0.0
    stage: PipelineStage | None = None
    label: str | None = None
    target: BuildTarget | None = None
    outcome: Outcome | None = None
    message: str | None = None


class LogAggregator:
    """Thread-safe sink shared by every producer in the engine.

    Retains at most *capacity* log lines and *event_capacity* events; the
    oldest entries are evicted first. Producers never wait on the observer:
    a consumer that falls behind simply loses the evicted prefix and can
    still read the latest progress, stage and outcome from :meth:`state`.

    Usage::

        agg = LogAggregator()
        agg.log("hello", StreamOrigin.STDOUT)
        for event in agg.poll(since=0):
            ...
    """

    def __init__(self, capacity: int = MAX_LOG_LINES, event_capacity: int | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._lines: deque[LogLine] = deque(maxlen=capacity)
        self._events: deque[EngineEvent] = deque(maxlen=event_capacity or capacity * 2)
        self._cond = threading.Condition(threading.Lock())
        self._seq = 0
        self._state = ObserverState()

    def __repr__(self) -> str:
        return f"LogAggregator(capacity={self._capacity}, retained={len(self._lines)})"

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------ #
    # Producers
    # ------------------------------------------------------------------ #

    def log(
        self,
        text: str,
        origin: StreamOrigin = StreamOrigin.ENGINE,
        target: BuildTarget | None = None,
    ) -> None:
        """Append *text*; embedded newlines produce one retained line each."""
        pieces = text.splitlines() or [""]
        with self._cond:
            for piece in pieces:
                seq = self._next_seq()
                line = LogLine(seq=seq, text=piece, origin=origin)
                self._lines.append(line)
                self._state.total_lines += 1
                self._events.append(
                    EngineEvent(seq=seq, kind=EventKind.LOG, target=target, line=line)
                )
            self._cond.notify_all()

    def progress(self, fraction: float, target: BuildTarget | None = None) -> None:
        fraction = min(max(fraction, 0.0), 1.0)
        with self._cond:
            self._state.progress = fraction
            self._publish(
                EngineEvent(
                    seq=self._next_seq(),
                    kind=EventKind.PROGRESS,
                    target=target,
                    progress=fraction,
                )
            )

    def stage(self, stage: PipelineStage, label: str, target: BuildTarget | None = None) -> None:
        with self._cond:
            self._state.stage = stage
            self._state.label = label
            self._state.target = target
            self._publish(
                EngineEvent(
                    seq=self._next_seq(),
                    kind=EventKind.STAGE,
                    target=target,
                    stage=stage,
                    label=label,
                )
            )

    def outcome(
        self,
        outcome: Outcome,
        message: str | None = None,
        target: BuildTarget | None = None,
    ) -> None:
        with self._cond:
            self._state.outcome = outcome
            self._state.message = message
            self._publish(
                EngineEvent(
                    seq=self._next_seq(),
                    kind=EventKind.OUTCOME,
                    target=target,
                    outcome=outcome,
                    message=message,
                )
            )
        logger.info("outcome_published", outcome=str(outcome), target=target)

    def begin_run(self) -> None:
        """Reset the latest-value state before a new job starts publishing."""
        with self._cond:
            self._state = ObserverState(last_seq=self._seq, total_lines=self._state.total_lines)

    # ------------------------------------------------------------------ #
    # Consumers
    # ------------------------------------------------------------------ #

    def lines(self) -> list[LogLine]:
        with self._cond:
            return list(self._lines)

    def poll(self, since: int = 0, limit: int | None = None) -> list[EngineEvent]:
        """Return retained events with ``seq > since``, oldest first."""
        with self._cond:
            return self._collect(since, limit)

    def wait(self, since: int = 0, timeout: float | None = None) -> list[EngineEvent]:
        """Like :meth:`poll`, but block up to *timeout* seconds for something new."""
        with self._cond:
            self._cond.wait_for(lambda: self._seq > since, timeout=timeout)
            return self._collect(since, None)

    def state(self) -> ObserverState:
        with self._cond:
            return self._state.model_copy()

    # ------------------------------------------------------------------ #
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------ #

    def _next_seq(self) -> int:
        self._seq += 1
        self._state.last_seq = self._seq
        return self._seq

    def _publish(self, event: EngineEvent) -> None:
        self._events.append(event)
        self._cond.notify_all()

    def _collect(self, since: int, limit: int | None) -> list[EngineEvent]:
        events = [e for e in self._events if e.seq > since]
        return events[:limit] if limit is not None else events
