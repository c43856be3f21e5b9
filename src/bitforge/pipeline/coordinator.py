"""Run the selected build pipelines one after another."""
from __future__ import annotations

import asyncio

import structlog

from bitforge.core.constants import BuildTarget, Outcome
from bitforge.core.exceptions import BitforgeError, BuildFailed
from bitforge.core.types import BuildRequest, RunResult, TargetResult
from bitforge.events.aggregator import LogAggregator
from bitforge.pipeline.build import BuildPipeline, BuildRecipe, recipe_for
from bitforge.process.supervisor import CommandRunner

logger = structlog.get_logger(__name__)


class PipelineCoordinator:
    """Build every requested target strictly in sequence, Bitcoin Core first.

    The first failure stops the run; later targets never start. Binaries that
    were already copied stay on disk. Exactly one terminal outcome event is
    published per run, including when the run is cancelled.

    Usage::

        coordinator = PipelineCoordinator(runner, aggregator)
        result = await coordinator.run(request)
    """

    def __init__(
        self,
        runner: CommandRunner,
        events: LogAggregator,
        *,
        cmake_threshold: int = 25,
        failure_tail_lines: int = 40,
        recipes: dict[BuildTarget, BuildRecipe] | None = None,
    ) -> None:
        self._runner = runner
        self._events = events
        self._cmake_threshold = cmake_threshold
        self._failure_tail_lines = failure_tail_lines
        self._recipes: dict[BuildTarget, BuildRecipe] = dict(recipes or {})
        self.started: list[str] = []

    def __repr__(self) -> str:
        return f"PipelineCoordinator(started={self.started})"

    def _recipe(self, target: BuildTarget) -> BuildRecipe:
        recipe = self._recipes.get(target)
        return recipe if recipe is not None else recipe_for(target, self._cmake_threshold)

    async def run(self, request: BuildRequest) -> RunResult:
        completed: list[TargetResult] = []
        count = len(request.targets)
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, request.prepare_build_dir)
            logger.info(
                "run_started",
                targets=[str(t) for t in request.targets],
                build_dir=str(request.build_dir),
                cores=request.cores,
            )
            for index, target in enumerate(request.targets):
                self.started.append(str(target))
                pipeline = BuildPipeline(
                    self._recipe(target),
                    self._runner,
                    self._events,
                    span=(index / count, (index + 1) / count),
                )
                completed.append(
                    await pipeline.run(request.version_for(target), request.build_dir, request.cores)
                )
        except asyncio.CancelledError:
            self._events.log("Build cancelled")
            self._events.outcome(Outcome.CANCELLED, "Build cancelled")
            raise
        except BuildFailed as exc:
            self._events.log(exc.render(self._failure_tail_lines))
            self._events.outcome(Outcome.FAILED, str(exc), _target_of(exc, request))
            return RunResult(outcome=Outcome.FAILED, completed=completed, error=exc)
        except BitforgeError as exc:
            # Validation of the request itself failed before any pipeline ran.
            self._events.log(f"Build not started: {exc}")
            self._events.outcome(Outcome.FAILED, str(exc))
            return RunResult(outcome=Outcome.FAILED, completed=completed, error=exc)

        self._events.progress(1.0)
        self._events.outcome(
            Outcome.SUCCEEDED,
            "Built " + ", ".join(f"{r.target.display_name} {r.version}" for r in completed),
        )
        logger.info("run_succeeded", targets=[str(r.target) for r in completed])
        return RunResult(outcome=Outcome.SUCCEEDED, completed=completed)


def _target_of(exc: BuildFailed, request: BuildRequest) -> BuildTarget | None:
    for target in request.targets:
        if str(target) == exc.target:
            return target
    return None
