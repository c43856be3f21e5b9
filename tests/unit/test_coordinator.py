"""Tests for pipeline/coordinator.py — sequential multi-target runs."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from bitforge.core.constants import BuildTarget, EventKind, Outcome
from bitforge.core.exceptions import BuildFailed, ValidationError
from bitforge.core.types import BuildRequest
from bitforge.events.aggregator import LogAggregator
from bitforge.pipeline.coordinator import PipelineCoordinator
from conftest import ScriptedRunner

BOTH = [BuildTarget.BITCOIN_CORE, BuildTarget.ELECTRS]
VERSIONS = {BuildTarget.BITCOIN_CORE: "v28.0", BuildTarget.ELECTRS: "v0.10.6"}


def fake_clone(program: str, args: list[str], cwd: Path | None) -> None:
    Path(args[-1], ".git").mkdir(parents=True)


def produce(bin_rel: str, *names: str):
    def hook(program: str, args: list[str], cwd: Path | None) -> None:
        assert cwd is not None
        (cwd / bin_rel).mkdir(parents=True, exist_ok=True)
        for name in names:
            (cwd / bin_rel / name).write_text(name)

    return hook


def _working_runner(agg: LogAggregator) -> ScriptedRunner:
    runner = ScriptedRunner(agg)
    runner.hooks["git clone"] = fake_clone
    runner.hooks["cmake --build"] = produce("build/bin", "bitcoind", "bitcoin-cli")
    runner.hooks["cargo build"] = produce("target/release", "electrs")
    return runner


def _request(build_dir: Path, targets: list[BuildTarget] = BOTH) -> BuildRequest:
    return BuildRequest(targets=targets, versions=VERSIONS, build_dir=build_dir, cores=1)


def _outcomes(agg: LogAggregator):
    return [e for e in agg.poll(0) if e.kind == EventKind.OUTCOME]


@pytest.mark.asyncio
async def test_both_targets_succeed_in_order(aggregator: LogAggregator, build_dir: Path) -> None:
    runner = _working_runner(aggregator)
    coordinator = PipelineCoordinator(runner, aggregator)  # type: ignore[arg-type]
    result = await coordinator.run(_request(build_dir))

    assert result.success
    assert [r.target for r in result.completed] == BOTH
    assert coordinator.started == ["bitcoin", "electrs"]
    clones = [c for c in runner.commands if c.startswith("git clone")]
    assert "bitcoin.git" in clones[0] and "electrs.git" in clones[1]

    outcomes = _outcomes(aggregator)
    assert len(outcomes) == 1
    assert outcomes[0].outcome == Outcome.SUCCEEDED
    assert outcomes[0].message == "Built Bitcoin Core v28.0, Electrs v0.10.6"
    assert result.summary() == {
        "outcome": "succeeded",
        "completed": ["bitcoin-28.0", "electrs-0.10.6"],
        "error": None,
    }


@pytest.mark.asyncio
async def test_progress_spans_are_split_between_targets(
    aggregator: LogAggregator, build_dir: Path
) -> None:
    runner = _working_runner(aggregator)
    await PipelineCoordinator(runner, aggregator).run(_request(build_dir))  # type: ignore[arg-type]

    progress = [e for e in aggregator.poll(0) if e.kind == EventKind.PROGRESS]
    values = [e.progress for e in progress]
    assert values == sorted(values)
    bitcoin = [e.progress for e in progress if e.target == BuildTarget.BITCOIN_CORE]
    electrs = [e.progress for e in progress if e.target == BuildTarget.ELECTRS]
    assert max(bitcoin) == pytest.approx(0.5)
    assert min(electrs) == pytest.approx(0.5)
    assert aggregator.state().progress == 1.0


@pytest.mark.asyncio
async def test_first_failure_stops_the_run(aggregator: LogAggregator, build_dir: Path) -> None:
    runner = _working_runner(aggregator)
    runner.fail["cmake -B"] = 1
    coordinator = PipelineCoordinator(runner, aggregator)  # type: ignore[arg-type]
    result = await coordinator.run(_request(build_dir))

    assert result.outcome == Outcome.FAILED
    assert result.completed == []
    assert isinstance(result.error, BuildFailed)
    assert result.error.target == "bitcoin"
    assert result.error.stage == "configure"
    assert coordinator.started == ["bitcoin"]
    assert not any("electrs" in c for c in runner.commands)

    outcomes = _outcomes(aggregator)
    assert [e.outcome for e in outcomes] == [Outcome.FAILED]
    assert outcomes[0].target == BuildTarget.BITCOIN_CORE
    texts = [line.text for line in aggregator.lines()]
    assert "cmake: error: boom" in texts


@pytest.mark.asyncio
async def test_second_target_failure_keeps_first_binaries(
    aggregator: LogAggregator, build_dir: Path
) -> None:
    runner = _working_runner(aggregator)
    runner.fail["cargo build"] = 101
    result = await PipelineCoordinator(runner, aggregator).run(_request(build_dir))  # type: ignore[arg-type]

    assert result.outcome == Outcome.FAILED
    assert [r.target for r in result.completed] == [BuildTarget.BITCOIN_CORE]
    assert (build_dir / "binaries" / "bitcoin-28.0" / "bitcoind").is_file()
    assert _outcomes(aggregator)[0].target == BuildTarget.ELECTRS


@pytest.mark.asyncio
async def test_unusable_build_dir_fails_before_any_command(
    aggregator: LogAggregator, tmp_path: Path
) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file")
    runner = _working_runner(aggregator)
    result = await PipelineCoordinator(runner, aggregator).run(  # type: ignore[arg-type]
        _request(blocker / "builds")
    )

    assert result.outcome == Outcome.FAILED
    assert isinstance(result.error, ValidationError)
    assert runner.calls == []
    assert [e.outcome for e in _outcomes(aggregator)] == [Outcome.FAILED]


@pytest.mark.asyncio
async def test_cancel_publishes_cancelled_outcome(
    aggregator: LogAggregator, build_dir: Path
) -> None:
    runner = _working_runner(aggregator)
    runner.block.add("cmake --build")
    task = asyncio.create_task(
        PipelineCoordinator(runner, aggregator).run(_request(build_dir))  # type: ignore[arg-type]
    )
    await asyncio.wait_for(runner.blocked.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [e.outcome for e in _outcomes(aggregator)] == [Outcome.CANCELLED]
    assert not any(c.startswith("cargo") for c in runner.commands)
