"""Tests for pipeline/stages.py."""
from __future__ import annotations

import pytest

from bitforge.core.constants import BuildTarget, PipelineStage
from bitforge.pipeline.stages import (
    FIRST_STAGE,
    STAGE_WEIGHTS,
    TRANSITIONS,
    next_stage,
    progress_at,
    stage_label,
    stage_sequence,
)


def test_transition_table_is_total() -> None:
    assert set(TRANSITIONS) == set(PipelineStage)
    assert set(STAGE_WEIGHTS) == set(PipelineStage)


def test_sequence_is_linear_and_ends_complete() -> None:
    assert stage_sequence() == [
        PipelineStage.CLONE,
        PipelineStage.CONFIGURE,
        PipelineStage.COMPILE,
        PipelineStage.COPY,
        PipelineStage.COMPLETE,
    ]
    assert FIRST_STAGE == PipelineStage.CLONE


def test_next_stage() -> None:
    assert next_stage(PipelineStage.COMPILE) == PipelineStage.COPY
    with pytest.raises(ValueError, match="terminal"):
        next_stage(PipelineStage.COMPLETE)


def test_weights_sum_to_one_and_compile_dominates() -> None:
    assert sum(STAGE_WEIGHTS.values()) == pytest.approx(1.0)
    assert max(STAGE_WEIGHTS, key=STAGE_WEIGHTS.__getitem__) == PipelineStage.COMPILE


@pytest.mark.parametrize(
    "stage,partial,expected",
    [
        (PipelineStage.CLONE, 0.0, 0.0),
        (PipelineStage.CLONE, 1.0, 0.15),
        (PipelineStage.CONFIGURE, 0.0, 0.15),
        (PipelineStage.COMPILE, 0.0, 0.30),
        (PipelineStage.COMPILE, 0.5, 0.60),
        (PipelineStage.COPY, 0.0, 0.90),
        (PipelineStage.COPY, 1.0, 1.0),
        (PipelineStage.COMPLETE, 0.0, 1.0),
    ],
)
def test_progress_at(stage: PipelineStage, partial: float, expected: float) -> None:
    assert progress_at(stage, partial) == pytest.approx(expected)


def test_progress_partial_is_clamped() -> None:
    assert progress_at(PipelineStage.CLONE, -3) == 0.0
    assert progress_at(PipelineStage.CLONE, 7) == pytest.approx(0.15)


def test_progress_is_monotonic_along_the_sequence() -> None:
    points = [progress_at(stage, p) for stage in stage_sequence() for p in (0.0, 1.0)]
    assert points == sorted(points)


def test_stage_labels() -> None:
    assert stage_label(BuildTarget.BITCOIN_CORE, PipelineStage.COMPILE, "v28.0") == (
        "Compiling Bitcoin Core v28.0"
    )
    assert stage_label(BuildTarget.ELECTRS, PipelineStage.CLONE, "v0.10.6") == (
        "Fetching source for Electrs v0.10.6"
    )
