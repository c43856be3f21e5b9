"""Shared test fixtures."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from bitforge.core.constants import BuildTarget
from bitforge.core.exceptions import CommandFailed
from bitforge.core.types import ExitStatus, ProbeResult
from bitforge.events.aggregator import LogAggregator

RunHook = Callable[[str, list[str], Path | None], Any]


class ScriptedRunner:
    """Stand-in for :class:`CommandRunner` that records commands instead of spawning.

    ``hooks`` run when a command matches (``program`` plus the first argument,
    or ``program`` alone) so tests can simulate side effects such as a clone
    creating the source directory. ``fail`` maps the same keys to an exit code.
    ``block`` keys make the command hang until cancelled.
    """

    def __init__(self, sink: LogAggregator | None = None, env: dict[str, str] | None = None) -> None:
        self.sink = sink or LogAggregator()
        self.env = env or {}
        self.calls: list[tuple[str, list[str], Path | None]] = []
        self.probe_calls: list[tuple[str, list[str]]] = []
        self.hooks: dict[str, RunHook] = {}
        self.fail: dict[str, int] = {}
        self.block: set[str] = set()
        self.missing_tools: set[str] = set()
        self.blocked = asyncio.Event()

    @staticmethod
    def _keys(program: str, args: list[str]) -> list[str]:
        keys = [program]
        if args:
            keys.insert(0, f"{program} {args[0]}")
        return keys

    @property
    def commands(self) -> list[str]:
        return [" ".join([program, *args]) for program, args, _ in self.calls]

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        target: BuildTarget | None = None,
    ) -> ExitStatus:
        cwd_path = Path(cwd) if cwd is not None else None
        self.calls.append((program, list(args), cwd_path))
        self.sink.log(f"$ {program} {' '.join(args)}", target=target)
        for key in self._keys(program, args):
            if key in self.block:
                self.blocked.set()
                await asyncio.Event().wait()
            if key in self.fail:
                raise CommandFailed(program, args, self.fail[key], [f"{program}: error: boom"])
            if key in self.hooks:
                self.hooks[key](program, list(args), cwd_path)
                break
        return ExitStatus(code=0)

    async def probe(self, program: str, args: list[str], name: str | None = None) -> ProbeResult:
        self.probe_calls.append((program, list(args)))
        label = name or program
        if program in self.missing_tools:
            return ProbeResult(name=label, present=False, error="command not found")
        return ProbeResult(name=label, present=True, output=f"{program} 1.80.0")


@pytest.fixture
def aggregator() -> LogAggregator:
    return LogAggregator(capacity=20_000)


@pytest.fixture
def scripted_runner(aggregator: LogAggregator) -> ScriptedRunner:
    return ScriptedRunner(aggregator)


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    path = tmp_path / "builds"
    path.mkdir()
    return path
