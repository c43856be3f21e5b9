"""Background runtime: one event loop thread plus a bounded worker pool.

The thread that owns the user interface never awaits anything. It submits
jobs, then polls :attr:`BuildEngine.events` and
:attr:`BuildEngine.confirmations` and answers questions from there.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Coroutine, Mapping
from pathlib import Path
from typing import Any, Generic, TypeVar

import httpx
import structlog

from bitforge.confirm.channel import ConfirmationChannel
from bitforge.core.config import EngineConfig
from bitforge.core.constants import BuildTarget, DependencyOutcome, Outcome
from bitforge.core.environment import brew_prefix, build_environment, find_brew
from bitforge.core.exceptions import BitforgeError, EngineBusy
from bitforge.core.types import BuildRequest, DependencyReport, RunResult, VersionTag
from bitforge.deps.resolver import DependencyResolver, HomebrewPackageManager
from bitforge.events.aggregator import LogAggregator
from bitforge.pipeline.coordinator import PipelineCoordinator
from bitforge.process.supervisor import CommandRunner
from bitforge.versions.resolver import VersionResolver, create_http_client

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_DEPENDENCY_OUTCOMES: dict[DependencyOutcome, Outcome] = {
    DependencyOutcome.ALL_PRESENT: Outcome.SUCCEEDED,
    DependencyOutcome.DONE: Outcome.SUCCEEDED,
    DependencyOutcome.DECLINED: Outcome.DECLINED,
    DependencyOutcome.FAILED: Outcome.FAILED,
}


class JobHandle(Generic[T]):
    """Control-thread view of one job running on the engine loop.

    ``cancel()`` only requests cancellation; ``wait()`` returns once the job
    has fully unwound, including killing and reaping any child process.
    """

    def __init__(self, name: str, loop: asyncio.AbstractEventLoop) -> None:
        self.name = name
        self._loop = loop
        self._task: asyncio.Task[T] | None = None
        self._result: concurrent.futures.Future[T] = concurrent.futures.Future()
        self._finished = threading.Event()
        self._cancel_requested = False

    def __repr__(self) -> str:
        return f"JobHandle(name={self.name!r}, done={self.done})"

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def result(self, timeout: float | None = None) -> T:
        """Block until the job finishes and return its value or raise its error.

        Raises:
            concurrent.futures.CancelledError: If the job was cancelled.
            concurrent.futures.TimeoutError: If *timeout* elapses first.
        """
        return self._result.result(timeout)

    def cancel(self) -> None:
        self._cancel_requested = True
        try:
            self._loop.call_soon_threadsafe(self._cancel_on_loop)
        except RuntimeError:
            # Loop already stopped; nothing left to cancel.
            pass

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    # Loop-side helpers

    def _start(self, coro: Coroutine[Any, Any, T]) -> None:
        if self._cancel_requested:
            coro.close()
            self._result.cancel()
            self._finished.set()
            return
        self._task = self._loop.create_task(coro, name=f"bitforge-{self.name}")
        self._task.add_done_callback(self._on_done)

    def _cancel_on_loop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _on_done(self, task: asyncio.Task[T]) -> None:
        if task.cancelled():
            self._result.cancel()
        elif task.exception() is not None:
            self._result.set_exception(task.exception())  # type: ignore[arg-type]
        else:
            self._result.set_result(task.result())
        self._finished.set()


class BuildEngine:
    """Owns the engine loop thread, the worker pool and the shared channels.

    Only one job runs at a time; submitting while a job is active raises
    :class:`EngineBusy`.

    Usage::

        with BuildEngine(EngineConfig.from_env()) as engine:
            job = engine.submit_fetch_versions(BuildTarget.BITCOIN_CORE)
            tags = job.result(timeout=30)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        events: LogAggregator | None = None,
        confirmations: ConfirmationChannel | None = None,
        env: Mapping[str, str] | None = None,
        brew: Path | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._events = events or LogAggregator(
            self.config.log_capacity, self.config.event_capacity
        )
        self._confirmations = confirmations or ConfirmationChannel()
        self._env: dict[str, str] | None = dict(env) if env is not None else None
        self._brew = brew if brew is not None else (self.config.brew_path or find_brew())
        self._http: httpx.AsyncClient | None = http_client
        self._owns_http = http_client is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._current: JobHandle[Any] | None = None

    def __repr__(self) -> str:
        running = self._thread is not None and self._thread.is_alive()
        return f"BuildEngine(running={running}, brew={self._brew})"

    def __enter__(self) -> BuildEngine:
        self.start()
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    @property
    def events(self) -> LogAggregator:
        return self._events

    @property
    def confirmations(self) -> ConfirmationChannel:
        return self._confirmations

    @property
    def brew(self) -> Path | None:
        return self._brew

    @property
    def current_job(self) -> JobHandle[Any] | None:
        return self._current

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._thread is not None:
            return
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.worker_threads,
            thread_name_prefix="bitforge-worker",
        )
        loop = asyncio.new_event_loop()
        loop.set_default_executor(self._executor)
        self._loop = loop
        self._thread = threading.Thread(
            target=self._run_loop, name="bitforge-engine", daemon=True
        )
        self._thread.start()
        logger.info("engine_started", workers=self.config.worker_threads, brew=str(self._brew))

    def close(self, timeout: float | None = 30.0) -> None:
        """Cancel any running job, wait for it to quiesce, and stop the loop."""
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return
        current = self._current
        if current is not None and not current.done:
            current.cancel()
            current.wait(timeout)
        if self._http is not None and self._owns_http:
            closing = asyncio.run_coroutine_threadsafe(self._http.aclose(), loop)
            closing.result(timeout)
            self._http = None
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        loop.close()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._loop = None
        self._thread = None
        self._executor = None
        logger.info("engine_stopped")

    def _run_loop(self) -> None:
        assert self._loop is not None
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    # ------------------------------------------------------------------ #
    # Jobs
    # ------------------------------------------------------------------ #

    def submit(self, name: str, coro: Coroutine[Any, Any, T]) -> JobHandle[T]:
        """Schedule *coro* on the engine loop as the single active job.

        Raises:
            EngineBusy: If another job has not finished yet.
        """
        if self._loop is None:
            coro.close()
            raise RuntimeError("BuildEngine is not started. Call start() first.")
        with self._lock:
            if self._current is not None and not self._current.done:
                coro.close()
                raise EngineBusy(
                    f"Job {self._current.name!r} is still running",
                    details={"running": self._current.name, "requested": name},
                )
            handle: JobHandle[T] = JobHandle(name, self._loop)
            self._current = handle
        self._loop.call_soon_threadsafe(handle._start, coro)
        logger.debug("job_submitted", job=name)
        return handle

    def submit_build(self, request: BuildRequest) -> JobHandle[RunResult]:
        return self.submit("build", self._build(request))

    def submit_dependency_check(self) -> JobHandle[DependencyReport]:
        return self.submit("dependencies", self._check_dependencies())

    def submit_fetch_versions(self, target: BuildTarget) -> JobHandle[list[VersionTag]]:
        return self.submit(f"versions-{target}", self._fetch_versions(target))

    def make_request(
        self,
        targets: list[BuildTarget],
        versions: Mapping[BuildTarget, str],
        *,
        build_dir: Path | None = None,
        cores: int | None = None,
    ) -> BuildRequest:
        """Build a validated :class:`BuildRequest`, filling gaps from the config."""
        return BuildRequest(
            targets=targets,
            versions=dict(versions),
            build_dir=build_dir or self.config.build_dir,
            cores=cores or self.config.cores,
        )

    # ------------------------------------------------------------------ #
    # Job bodies (run on the engine loop)
    # ------------------------------------------------------------------ #

    async def _build(self, request: BuildRequest) -> RunResult:
        self._events.begin_run()
        coordinator = PipelineCoordinator(
            self.runner(),
            self._events,
            cmake_threshold=self.config.cmake_threshold,
            failure_tail_lines=self.config.failure_tail_lines,
        )
        return await coordinator.run(request)

    async def _check_dependencies(self) -> DependencyReport:
        self._events.begin_run()
        runner = self.runner()
        manager = HomebrewPackageManager(self._brew, runner) if self._brew else None
        resolver = DependencyResolver(
            runner,
            self._confirmations,
            manager,
            concurrency=self.config.probe_concurrency,
        )
        try:
            report = await resolver.resolve()
        except asyncio.CancelledError:
            self._events.outcome(Outcome.CANCELLED, "Dependency check cancelled")
            raise
        self._events.outcome(
            _DEPENDENCY_OUTCOMES[report.outcome],
            report.message or f"Dependency check {report.outcome}",
        )
        return report

    async def _fetch_versions(self, target: BuildTarget) -> list[VersionTag]:
        resolver = VersionResolver(
            self._client(),
            per_page=self.config.per_page,
            max_versions=self.config.max_versions,
        )
        try:
            return await resolver.fetch_versions(target)
        except BitforgeError as exc:
            self._events.log(f"Could not load {target.display_name} versions: {exc}")
            raise

    # ------------------------------------------------------------------ #
    # Shared resources
    # ------------------------------------------------------------------ #

    def environment(self) -> dict[str, str]:
        """The child-process environment, computed once per engine."""
        if self._env is None:
            prefix = brew_prefix(self._brew) if self._brew else None
            self._env = build_environment(prefix)
        return self._env

    def runner(self) -> CommandRunner:
        return CommandRunner(
            self._events, self.environment(), tail_lines=self.config.failure_tail_lines
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = create_http_client(self.config.http_timeout)
        return self._http
