"""Tests for events/aggregator.py — bounded ordered observer channel."""
from __future__ import annotations

import threading
import time

import pytest

from bitforge.core.constants import (
    BuildTarget,
    EventKind,
    Outcome,
    PipelineStage,
    StreamOrigin,
)
from bitforge.events.aggregator import LogAggregator

# ---------------------------------------------------------------------------
# Retention and eviction
# ---------------------------------------------------------------------------


def test_default_capacity_is_4000() -> None:
    assert LogAggregator().capacity == 4000


def test_never_retains_more_than_capacity() -> None:
    agg = LogAggregator()
    for i in range(10_000):
        agg.log(f"line {i}")
    assert len(agg.lines()) == 4000


@pytest.mark.parametrize("count", [1, 3999, 4000, 4001, 4500, 12_345])
def test_oldest_surviving_line_follows_fifo_eviction(count: int) -> None:
    agg = LogAggregator()
    for i in range(1, count + 1):
        agg.log(f"line {i}")
    lines = agg.lines()
    first_expected = max(count - 4000 + 1, 1)
    assert lines[0].text == f"line {first_expected}"
    assert lines[-1].text == f"line {count}"
    assert len(lines) == min(count, 4000)


def test_small_capacity() -> None:
    agg = LogAggregator(capacity=3)
    for text in "abcde":
        agg.log(text)
    assert [line.text for line in agg.lines()] == ["c", "d", "e"]


def test_invalid_capacity_rejected() -> None:
    with pytest.raises(ValueError):
        LogAggregator(capacity=0)


def test_multiline_text_becomes_separate_lines() -> None:
    agg = LogAggregator()
    agg.log("one\ntwo\nthree")
    assert [line.text for line in agg.lines()] == ["one", "two", "three"]


def test_empty_text_is_kept_as_blank_line() -> None:
    agg = LogAggregator()
    agg.log("")
    assert [line.text for line in agg.lines()] == [""]


def test_line_records_origin() -> None:
    agg = LogAggregator()
    agg.log("out", StreamOrigin.STDOUT)
    agg.log("err", StreamOrigin.STDERR)
    assert [line.origin for line in agg.lines()] == [StreamOrigin.STDOUT, StreamOrigin.STDERR]


# ---------------------------------------------------------------------------
# Ordered event stream
# ---------------------------------------------------------------------------


def test_events_share_one_ordered_sequence() -> None:
    agg = LogAggregator()
    agg.stage(PipelineStage.CLONE, "Fetching", BuildTarget.BITCOIN_CORE)
    agg.log("cloning")
    agg.progress(0.15)
    agg.outcome(Outcome.SUCCEEDED, "done")
    events = agg.poll()
    assert [e.kind for e in events] == [
        EventKind.STAGE,
        EventKind.LOG,
        EventKind.PROGRESS,
        EventKind.OUTCOME,
    ]
    assert [e.seq for e in events] == [1, 2, 3, 4]
    assert events[1].line is not None and events[1].line.seq == 2


def test_poll_since_returns_only_newer_events() -> None:
    agg = LogAggregator()
    for i in range(5):
        agg.log(str(i))
    events = agg.poll(since=3)
    assert [e.line.text for e in events if e.line] == ["3", "4"]


def test_poll_limit() -> None:
    agg = LogAggregator()
    for i in range(5):
        agg.log(str(i))
    assert len(agg.poll(limit=2)) == 2


def test_progress_is_clamped() -> None:
    agg = LogAggregator()
    agg.progress(1.7)
    agg.progress(-0.2)
    values = [e.progress for e in agg.poll()]
    assert values == [1.0, 0.0]


def test_event_buffer_is_bounded() -> None:
    agg = LogAggregator(capacity=10, event_capacity=10)
    for i in range(100):
        agg.log(str(i))
    events = agg.poll()
    assert len(events) == 10
    assert events[0].seq == 91


# ---------------------------------------------------------------------------
# Latest-value state
# ---------------------------------------------------------------------------


def test_state_tracks_latest_values() -> None:
    agg = LogAggregator()
    agg.stage(PipelineStage.COMPILE, "Compiling Bitcoin Core v28.0", BuildTarget.BITCOIN_CORE)
    agg.progress(0.4)
    agg.log("x")
    state = agg.state()
    assert state.stage == PipelineStage.COMPILE
    assert state.label == "Compiling Bitcoin Core v28.0"
    assert state.target == BuildTarget.BITCOIN_CORE
    assert state.progress == pytest.approx(0.4)
    assert state.total_lines == 1
    assert state.last_seq == 3
    assert state.outcome is None


def test_state_survives_event_eviction() -> None:
    agg = LogAggregator(capacity=5, event_capacity=5)
    agg.outcome(Outcome.FAILED, "boom")
    for i in range(50):
        agg.log(str(i))
    assert all(e.kind == EventKind.LOG for e in agg.poll())
    assert agg.state().outcome == Outcome.FAILED


def test_begin_run_resets_state_but_keeps_sequence() -> None:
    agg = LogAggregator()
    agg.progress(0.9)
    agg.outcome(Outcome.FAILED, "x")
    agg.begin_run()
    state = agg.state()
    assert state.progress == 0.0
    assert state.outcome is None
    agg.log("next")
    assert agg.poll()[-1].seq == 3


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_producers_lose_nothing_below_capacity() -> None:
    agg = LogAggregator(capacity=20_000)

    def produce(prefix: str) -> None:
        for i in range(2000):
            agg.log(f"{prefix}-{i}")

    threads = [threading.Thread(target=produce, args=(f"t{n}",)) for n in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    texts = [line.text for line in agg.lines()]
    assert len(texts) == 10_000
    assert len(set(texts)) == 10_000
    seqs = [line.seq for line in agg.lines()]
    assert seqs == sorted(seqs)
    # Intra-producer order is preserved.
    t0 = [int(t.split("-")[1]) for t in texts if t.startswith("t0-")]
    assert t0 == list(range(2000))


def test_concurrent_producers_respect_capacity() -> None:
    agg = LogAggregator(capacity=100)

    def produce() -> None:
        for i in range(1000):
            agg.log(str(i))

    threads = [threading.Thread(target=produce) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(agg.lines()) == 100


def test_wait_returns_when_event_arrives() -> None:
    agg = LogAggregator()

    def later() -> None:
        time.sleep(0.05)
        agg.log("hello")

    threading.Thread(target=later).start()
    events = agg.wait(since=0, timeout=5)
    assert [e.line.text for e in events if e.line] == ["hello"]


def test_wait_times_out_with_nothing_new() -> None:
    agg = LogAggregator()
    agg.log("old")
    assert agg.wait(since=1, timeout=0.05) == []
