"""Stage transition table and weighted progress for one build pipeline."""
from __future__ import annotations

from bitforge.core.constants import BuildTarget, PipelineStage

# Every stage maps to its successor; COMPLETE is terminal.
TRANSITIONS: dict[PipelineStage, PipelineStage | None] = {
    PipelineStage.CLONE: PipelineStage.CONFIGURE,
    PipelineStage.CONFIGURE: PipelineStage.COMPILE,
    PipelineStage.COMPILE: PipelineStage.COPY,
    PipelineStage.COPY: PipelineStage.COMPLETE,
    PipelineStage.COMPLETE: None,
}

STAGE_WEIGHTS: dict[PipelineStage, float] = {
    PipelineStage.CLONE: 0.15,
    PipelineStage.CONFIGURE: 0.15,
    PipelineStage.COMPILE: 0.60,
    PipelineStage.COPY: 0.10,
    PipelineStage.COMPLETE: 0.0,
}

_VERBS: dict[PipelineStage, str] = {
    PipelineStage.CLONE: "Fetching source for",
    PipelineStage.CONFIGURE: "Configuring",
    PipelineStage.COMPILE: "Compiling",
    PipelineStage.COPY: "Installing binaries for",
    PipelineStage.COMPLETE: "Finished",
}

if set(TRANSITIONS) != set(PipelineStage) or set(STAGE_WEIGHTS) != set(PipelineStage):
    raise RuntimeError("stage tables must cover every PipelineStage")
if abs(sum(STAGE_WEIGHTS.values()) - 1.0) > 1e-9:
    raise RuntimeError("stage weights must sum to 1.0")

FIRST_STAGE = PipelineStage.CLONE


def next_stage(stage: PipelineStage) -> PipelineStage:
    """Return the stage that follows *stage*.

    Raises:
        ValueError: If *stage* is terminal.
    """
    successor = TRANSITIONS[stage]
    if successor is None:
        raise ValueError(f"{stage!s} is terminal")
    return successor


def stage_sequence() -> list[PipelineStage]:
    """All stages from the first to ``COMPLETE``, following the table."""
    order = [FIRST_STAGE]
    successor = TRANSITIONS[FIRST_STAGE]
    while successor is not None:
        order.append(successor)
        successor = TRANSITIONS[successor]
    return order


def progress_at(stage: PipelineStage, partial: float = 0.0) -> float:
    """Fraction of the pipeline done when *stage* is *partial* complete."""
    if stage == PipelineStage.COMPLETE:
        return 1.0
    done = 0.0
    for current in stage_sequence():
        if current == stage:
            break
        done += STAGE_WEIGHTS[current]
    partial = min(max(partial, 0.0), 1.0)
    return min(done + STAGE_WEIGHTS[stage] * partial, 1.0)


def stage_label(target: BuildTarget, stage: PipelineStage, version: str) -> str:
    return f"{_VERBS[stage]} {target.display_name} {version}"
