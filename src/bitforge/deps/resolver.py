"""Dependency check: probe, ask once, install what is missing, probe again."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from bitforge.confirm.channel import Confirmer
from bitforge.core.constants import (
    REQUIRED_PACKAGES,
    RUST_TOOLCHAIN,
    DependencyOutcome,
    PackageState,
    ResolverState,
)
from bitforge.core.exceptions import CommandFailed, ProbeFailure
from bitforge.core.types import DependencyReport, PackageStatus, ProbeResult
from bitforge.process.supervisor import CommandRunner

logger = structlog.get_logger(__name__)

CONFIRM_TITLE = "Install Missing Dependencies"
PREVIEW_COUNT = 5


class PackageManager(ABC):
    """The external package manager the resolver drives."""

    name: str = "package manager"

    @abstractmethod
    async def is_installed(self, package: str) -> ProbeResult: ...

    @abstractmethod
    async def install(self, package: str) -> None:
        """Install *package*, raising :class:`CommandFailed` on failure."""
        ...


class HomebrewPackageManager(PackageManager):
    name = "Homebrew"

    def __init__(self, brew: Path | str, runner: CommandRunner) -> None:
        self.brew = str(brew)
        self._runner = runner

    def __repr__(self) -> str:
        return f"HomebrewPackageManager(brew={self.brew!r})"

    async def is_installed(self, package: str) -> ProbeResult:
        return await self._runner.probe(self.brew, ["list", package], name=package)

    async def install(self, package: str) -> None:
        await self._runner.run(self.brew, ["install", package])


def confirmation_message(missing: list[str]) -> str:
    count = len(missing)
    preview = ", ".join(missing[:PREVIEW_COUNT])
    extra = f", and {count - PREVIEW_COUNT} more" if count > PREVIEW_COUNT else ""
    plural = "" if count == 1 else "s"
    return (
        f"Found {count} missing package{plural}:\n\n{preview}{extra}\n\n"
        "Install all missing packages now?"
    )


class DependencyResolver:
    """One dependency-check invocation.

    States: ``PROBING`` then either ``ALL_PRESENT``, or ``AWAITING_CONFIRMATION``
    followed by ``DECLINED`` or ``INSTALLING`` → ``REPROBING`` → ``DONE``.
    ``FAILED`` is reached when no package manager is available.

    Probe and install failures are recorded per package and never stop the
    remaining items. Packages that are still missing at the end do not fail
    the report; the build stage that needs them fails with a precise error.
    """

    def __init__(
        self,
        runner: CommandRunner,
        confirmer: Confirmer,
        manager: PackageManager | None,
        *,
        packages: tuple[str, ...] = REQUIRED_PACKAGES,
        toolchain: str | None = RUST_TOOLCHAIN,
        concurrency: int = 4,
    ) -> None:
        self._runner = runner
        self._confirmer = confirmer
        self._manager = manager
        self._items = list(packages) + ([toolchain] if toolchain else [])
        self._toolchain = toolchain
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))
        self._state = ResolverState.PROBING
        self.history: list[ResolverState] = []

    def __repr__(self) -> str:
        return f"DependencyResolver(items={len(self._items)}, state={self._state!s})"

    @property
    def state(self) -> ResolverState:
        return self._state

    async def resolve(self) -> DependencyReport:
        sink = self._runner.sink
        if self._manager is None:
            self._enter(ResolverState.FAILED)
            message = (
                "Homebrew was not found. Install it from https://brew.sh and run the "
                "dependency check again."
            )
            sink.log(message)
            return DependencyReport(outcome=DependencyOutcome.FAILED, message=message)

        self._enter(ResolverState.PROBING)
        sink.log(f"=== Checking dependencies via {self._manager.name} ===")
        first = await self._probe_all(self._items)
        for name in self._items:
            result = first[name]
            sink.log(f"  {'ok' if result.present else 'missing'}  {name}")
        missing = [name for name in self._items if not first[name].present]

        if not missing:
            self._enter(ResolverState.ALL_PRESENT)
            sink.log("All dependencies are installed.")
            return self._report(DependencyOutcome.ALL_PRESENT, first, {}, {})

        self._enter(ResolverState.AWAITING_CONFIRMATION)
        sink.log(f"Missing: {', '.join(missing)}")
        approved = await self._confirmer.ask(CONFIRM_TITLE, confirmation_message(missing))
        if not approved:
            self._enter(ResolverState.DECLINED)
            sink.log("Dependencies not installed. Compilation may fail.")
            return self._report(
                DependencyOutcome.DECLINED,
                first,
                {},
                {},
                message="Installation declined",
            )

        self._enter(ResolverState.INSTALLING)
        install_errors: dict[str, str] = {}
        for name in missing:
            sink.log(f"Installing {name}...")
            try:
                await self._manager.install(name)
            except CommandFailed as exc:
                install_errors[name] = str(exc)
                sink.log(f"Failed to install {name}: {exc}")
                logger.warning("install_failed", package=name, exit_code=exc.exit_code)
            else:
                sink.log(f"{name} installed")

        self._enter(ResolverState.REPROBING)
        second = await self._probe_all(missing)

        self._enter(ResolverState.DONE)
        report = self._report(DependencyOutcome.DONE, first, second, install_errors)
        if report.still_missing:
            sink.log(f"Still missing after install: {', '.join(report.still_missing)}")
        else:
            sink.log("All missing dependencies were installed.")
        return report

    async def _probe_all(self, names: list[str]) -> dict[str, ProbeResult]:
        results = await asyncio.gather(*(self._probe_bounded(name) for name in names))
        return dict(zip(names, results))

    async def _probe_bounded(self, name: str) -> ProbeResult:
        async with self._semaphore:
            try:
                if name == self._toolchain:
                    return await self._probe_toolchain(name)
                assert self._manager is not None
                return await self._manager.is_installed(name)
            except ProbeFailure as exc:
                logger.warning("probe_failed", package=name, error=str(exc))
                return ProbeResult(name=name, present=False, error=str(exc))

    async def _probe_toolchain(self, name: str) -> ProbeResult:
        # Both halves of the Rust toolchain must answer --version.
        rustc = await self._runner.probe("rustc", ["--version"])
        cargo = await self._runner.probe("cargo", ["--version"])
        present = rustc.present and cargo.present
        error = None if present else "rustc or cargo not found in PATH"
        return ProbeResult(
            name=name,
            present=present,
            output="; ".join(filter(None, [rustc.output, cargo.output])),
            error=error,
        )

    def _report(
        self,
        outcome: DependencyOutcome,
        first: dict[str, ProbeResult],
        second: dict[str, ProbeResult],
        install_errors: dict[str, str],
        message: str | None = None,
    ) -> DependencyReport:
        packages: dict[str, PackageStatus] = {}
        for name in self._items:
            before = first[name]
            after = second.get(name)
            if before.present:
                state = PackageState.PRESENT
            elif after is None:
                state = PackageState.MISSING
            elif after.present:
                state = PackageState.NEWLY_INSTALLED
            else:
                state = PackageState.STILL_MISSING
            packages[name] = PackageStatus(
                name=name,
                state=state,
                probe_error=(after or before).error if state != PackageState.PRESENT else None,
                install_error=install_errors.get(name),
            )
        return DependencyReport(outcome=outcome, packages=packages, message=message)

    def _enter(self, state: ResolverState) -> None:
        self._state = state
        self.history.append(state)
        logger.debug("dependency_state", state=str(state))
