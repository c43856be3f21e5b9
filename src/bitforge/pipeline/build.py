"""Per-target build pipeline: clone or update, configure, compile, copy."""
from __future__ import annotations

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from bitforge.core.constants import REPOSITORY_URLS, BuildTarget, PipelineStage
from bitforge.core.exceptions import (
    BinaryNotFound,
    BitforgeError,
    BuildFailed,
    ToolchainMissing,
)
from bitforge.core.shell import validate_version_tag
from bitforge.core.types import TargetResult, parse_major_minor, strip_version_prefix
from bitforge.events.aggregator import LogAggregator
from bitforge.pipeline.stages import FIRST_STAGE, next_stage, progress_at, stage_label
from bitforge.process.supervisor import CommandRunner

logger = structlog.get_logger(__name__)

EXECUTABLE_MODE = 0o755
SEPARATOR = "=" * 60


class BuildRecipe(ABC):
    """How one target is configured and compiled, and where its binaries land."""

    target: BuildTarget
    source_prefix: str
    required_binaries: tuple[str, ...] = ()
    optional_binaries: tuple[str, ...] = ()

    @property
    def repository(self) -> str:
        return REPOSITORY_URLS[self.target]

    def source_dir(self, build_dir: Path, version: str) -> Path:
        return build_dir / f"{self.source_prefix}-{strip_version_prefix(version)}"

    def output_dir(self, build_dir: Path, version: str) -> Path:
        return build_dir / "binaries" / f"{self.source_prefix}-{strip_version_prefix(version)}"

    @abstractmethod
    async def configure(self, runner: CommandRunner, src_dir: Path, version: str) -> None: ...

    @abstractmethod
    async def compile(
        self, runner: CommandRunner, src_dir: Path, version: str, cores: int
    ) -> None: ...

    @abstractmethod
    def binary_dir(self, src_dir: Path, version: str) -> Path: ...


class BitcoinCoreRecipe(BuildRecipe):
    """Node-only Bitcoin Core build.

    Versions at or above ``cmake_threshold`` use CMake (wallet and IPC off);
    older versions use autotools (wallet and GUI off).
    """

    target = BuildTarget.BITCOIN_CORE
    source_prefix = "bitcoin"
    required_binaries = ("bitcoind", "bitcoin-cli")
    optional_binaries = ("bitcoin-tx", "bitcoin-util", "bitcoin-wallet")

    def __init__(self, cmake_threshold: int = 25) -> None:
        self.cmake_threshold = cmake_threshold

    def uses_cmake(self, version: str) -> bool:
        major, _ = parse_major_minor(version)
        return major >= self.cmake_threshold

    async def configure(self, runner: CommandRunner, src_dir: Path, version: str) -> None:
        if self.uses_cmake(version):
            runner.sink.log("Configuring with CMake (wallet support disabled)", target=self.target)
            await runner.run(
                "cmake",
                ["-B", "build", "-DENABLE_WALLET=OFF", "-DENABLE_IPC=OFF"],
                cwd=src_dir,
                target=self.target,
            )
            return
        runner.sink.log("Configuring with autotools (wallet support disabled)", target=self.target)
        await runner.run("./autogen.sh", [], cwd=src_dir, target=self.target)
        await runner.run(
            "./configure",
            ["--disable-wallet", "--disable-gui"],
            cwd=src_dir,
            target=self.target,
        )

    async def compile(self, runner: CommandRunner, src_dir: Path, version: str, cores: int) -> None:
        runner.sink.log(f"Compiling with {cores} core(s)", target=self.target)
        if self.uses_cmake(version):
            await runner.run(
                "cmake", ["--build", "build", f"-j{cores}"], cwd=src_dir, target=self.target
            )
        else:
            await runner.run("make", [f"-j{cores}"], cwd=src_dir, target=self.target)

    def binary_dir(self, src_dir: Path, version: str) -> Path:
        return src_dir / "build" / "bin" if self.uses_cmake(version) else src_dir / "src"


class ElectrsRecipe(BuildRecipe):
    """Electrs release build with Cargo; the Rust toolchain must already exist."""

    target = BuildTarget.ELECTRS
    source_prefix = "electrs"
    required_binaries = ("electrs",)

    async def configure(self, runner: CommandRunner, src_dir: Path, version: str) -> None:
        cargo = await runner.probe("cargo", ["--version"])
        if not cargo.present:
            raise ToolchainMissing(
                "cargo not found in PATH; Electrs requires the Rust toolchain. "
                "Run the dependency check to install it.",
                details={"tool": "cargo"},
            )
        runner.sink.log(f"Cargo found: {cargo.output}", target=self.target)
        rustc = await runner.probe("rustc", ["--version"])
        if rustc.present:
            runner.sink.log(f"Rustc found: {rustc.output}", target=self.target)
        else:
            runner.sink.log("Warning: rustc check failed but cargo is present", target=self.target)
        libclang = (runner.env or {}).get("LIBCLANG_PATH")
        if libclang:
            runner.sink.log(f"LIBCLANG_PATH: {libclang}", target=self.target)

    async def compile(self, runner: CommandRunner, src_dir: Path, version: str, cores: int) -> None:
        runner.sink.log(f"Building with Cargo ({cores} jobs)", target=self.target)
        await runner.run(
            "cargo",
            ["build", "--release", "--jobs", str(cores)],
            cwd=src_dir,
            target=self.target,
        )

    def binary_dir(self, src_dir: Path, version: str) -> Path:
        return src_dir / "target" / "release"


def recipe_for(target: BuildTarget, cmake_threshold: int = 25) -> BuildRecipe:
    if target == BuildTarget.BITCOIN_CORE:
        return BitcoinCoreRecipe(cmake_threshold=cmake_threshold)
    return ElectrsRecipe()


class BuildPipeline:
    """Drive one target through every stage, reporting each transition.

    Any :class:`BitforgeError` or filesystem error raised inside a stage is
    re-raised as :class:`BuildFailed` naming that stage. Cancellation
    propagates unchanged after being logged; the supervisor kills whatever
    child was running.

    Args:
        recipe: Target-specific build steps.
        runner: Command runner bound to the build environment.
        events: Observer channel for stage labels and progress.
        span: Portion ``(start, end)`` of the overall progress bar this
            pipeline fills, so several pipelines can share one bar.
    """

    def __init__(
        self,
        recipe: BuildRecipe,
        runner: CommandRunner,
        events: LogAggregator,
        span: tuple[float, float] = (0.0, 1.0),
    ) -> None:
        self._recipe = recipe
        self._runner = runner
        self._events = events
        self._span = span
        self.stage: PipelineStage = FIRST_STAGE
        self.visited: list[PipelineStage] = []
        self._handlers: dict[PipelineStage, Callable[[Path, str, int], Awaitable[None]]] = {
            PipelineStage.CLONE: self._clone,
            PipelineStage.CONFIGURE: self._configure,
            PipelineStage.COMPILE: self._compile,
            PipelineStage.COPY: self._copy,
        }
        self._binaries: list[Path] = []

    def __repr__(self) -> str:
        return f"BuildPipeline(target={self._recipe.target!s}, stage={self.stage!s})"

    @property
    def target(self) -> BuildTarget:
        return self._recipe.target

    async def run(self, version: str, build_dir: Path, cores: int) -> TargetResult:
        target = self.target
        self._binaries = []
        self._log(f"{SEPARATOR}\nBUILDING {target.display_name.upper()} {version}\n{SEPARATOR}")
        stage = FIRST_STAGE
        try:
            while stage != PipelineStage.COMPLETE:
                self._enter(stage, version)
                await self._handlers[stage](build_dir, version, cores)
                self._report_progress(progress_at(stage, 1.0))
                stage = next_stage(stage)
        except asyncio.CancelledError:
            self._log(f"Cancelled during {stage}")
            logger.warning("pipeline_cancelled", target=str(target), stage=str(stage))
            raise
        except (BitforgeError, OSError) as exc:
            logger.error(
                "pipeline_failed",
                target=str(target),
                version=version,
                stage=str(stage),
                error=str(exc),
            )
            raise BuildFailed(str(target), version, str(stage), exc) from exc

        self._enter(PipelineStage.COMPLETE, version)
        output_dir = self._recipe.output_dir(build_dir, version)
        self._log(
            f"{target.display_name} {version} built successfully\n"
            f"Binaries: {output_dir} ({len(self._binaries)} file(s))"
        )
        return TargetResult(
            target=target, version=version, output_dir=output_dir, binaries=list(self._binaries)
        )

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    async def _clone(self, build_dir: Path, version: str, cores: int) -> None:
        tag = validate_version_tag(version)
        src_dir = self._recipe.source_dir(build_dir, tag)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: build_dir.mkdir(parents=True, exist_ok=True))

        if src_dir.is_dir() and not (src_dir / ".git").exists():
            # An interrupted clone leaves a directory git cannot update.
            self._log(f"Removing incomplete checkout at {src_dir}")
            await loop.run_in_executor(None, shutil.rmtree, src_dir)

        if src_dir.is_dir():
            self._log(f"Updating existing checkout at {src_dir}")
            await self._runner.run(
                "git",
                ["fetch", "--depth", "1", "origin", "tag", tag],
                cwd=src_dir,
                target=self.target,
            )
            await self._runner.run("git", ["checkout", tag], cwd=src_dir, target=self.target)
        else:
            self._log(f"Cloning {self._recipe.repository} at {tag}")
            await self._runner.run(
                "git",
                ["clone", "--depth", "1", "--branch", tag, self._recipe.repository, str(src_dir)],
                cwd=build_dir,
                target=self.target,
            )

    async def _configure(self, build_dir: Path, version: str, cores: int) -> None:
        src_dir = self._recipe.source_dir(build_dir, version)
        await self._recipe.configure(self._runner, src_dir, version)

    async def _compile(self, build_dir: Path, version: str, cores: int) -> None:
        src_dir = self._recipe.source_dir(build_dir, version)
        await self._recipe.compile(self._runner, src_dir, version, cores)

    async def _copy(self, build_dir: Path, version: str, cores: int) -> None:
        src_dir = self._recipe.source_dir(build_dir, version)
        bin_dir = self._recipe.binary_dir(src_dir, version)
        dest = self._recipe.output_dir(build_dir, version)
        loop = asyncio.get_running_loop()
        self._binaries = await loop.run_in_executor(None, self._copy_binaries, bin_dir, dest)

    def _copy_binaries(self, bin_dir: Path, dest: Path) -> list[Path]:
        for name in self._recipe.required_binaries:
            if not (bin_dir / name).is_file():
                raise BinaryNotFound(name, str(bin_dir))

        dest.mkdir(parents=True, exist_ok=True)
        self._log(f"Copying binaries to {dest}")
        copied: list[Path] = []
        for name in self._recipe.required_binaries + self._recipe.optional_binaries:
            source = bin_dir / name
            if not source.is_file():
                self._log(f"Optional binary not built, skipping: {name}")
                continue
            target = dest / name
            shutil.copy2(source, target)
            os.chmod(target, EXECUTABLE_MODE)
            self._log(f"Copied {name} -> {target}")
            copied.append(target)
        return copied

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def _enter(self, stage: PipelineStage, version: str) -> None:
        self.stage = stage
        self.visited.append(stage)
        self._events.stage(stage, stage_label(self.target, stage, version), self.target)
        self._report_progress(progress_at(stage, 0.0))
        logger.info("stage_started", target=str(self.target), stage=str(stage), version=version)

    def _report_progress(self, local: float) -> None:
        start, end = self._span
        self._events.progress(start + (end - start) * local, self.target)

    def _log(self, text: str) -> None:
        self._events.log(text, target=self.target)
