"""Child-process supervision: spawn, drain both pipes concurrently, never orphan.

Every supervised command runs as ``sh -c '<quoted program>' '<quoted arg>' ...``
in a new session, so cancelling the awaiting task kills the whole process
group (``make`` and ``cmake`` fan out into many grandchildren).
"""
from __future__ import annotations

import asyncio
import os
import signal
from collections import deque
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from bitforge.core.constants import BuildTarget, StreamOrigin
from bitforge.core.exceptions import CommandFailed, ProbeFailure
from bitforge.core.shell import join_command
from bitforge.core.types import ExitStatus, ProbeResult
from bitforge.events.aggregator import LogSink

logger = structlog.get_logger(__name__)

# Compilers occasionally emit very long single lines (full command echoes).
STREAM_LIMIT = 1024 * 1024
DEFAULT_TAIL_LINES = 40
PROBE_SNIPPET_CHARS = 200


class ProcessHandle:
    """Owns one live child process and the two tasks draining its pipes.

    Use as an async context manager; leaving the block by any path, including
    cancellation, kills the child's process group if it is still running and
    reaps it before returning.

    Usage::

        async with ProcessHandle("make", ["-j4"], cwd=src, sink=agg) as handle:
            status = await handle.run()
    """

    def __init__(
        self,
        program: str,
        args: list[str],
        *,
        sink: LogSink,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        target: BuildTarget | None = None,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self.program = program
        self.args = list(args)
        self.command = join_command(program, self.args)
        self._sink = sink
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._target = target
        self._tail: deque[str] = deque(maxlen=max(tail_lines, 1))
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task[None]] = []

    def __repr__(self) -> str:
        pid = self._process.pid if self._process else None
        return f"ProcessHandle(command={self.command!r}, pid={pid})"

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def tail(self) -> list[str]:
        """The most recent output lines from both streams."""
        return list(self._tail)

    async def __aenter__(self) -> ProcessHandle:
        await self.spawn()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def spawn(self) -> None:
        extra: dict[str, Any] = {}
        if os.name == "posix":
            extra["start_new_session"] = True
        try:
            self._process = await asyncio.create_subprocess_exec(
                "sh",
                "-c",
                self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
                limit=STREAM_LIMIT,
                **extra,
            )
        except OSError as exc:
            logger.error("spawn_failed", command=self.command, cwd=str(self._cwd), error=str(exc))
            raise CommandFailed(self.program, self.args, None, [str(exc)]) from exc
        logger.debug("process_spawned", command=self.command, pid=self._process.pid)

    async def run(self) -> ExitStatus:
        """Drain stdout and stderr to end-of-stream, then reap the process."""
        process = self._require_process()
        assert process.stdout is not None and process.stderr is not None
        self._pumps = [
            asyncio.create_task(self._pump(process.stdout, StreamOrigin.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, StreamOrigin.STDERR)),
        ]
        await asyncio.gather(*self._pumps)
        code = await process.wait()
        logger.debug("process_exited", command=self.command, pid=process.pid, code=code)
        return ExitStatus(code=code)

    def kill(self) -> None:
        """Send SIGKILL to the child's process group (or the child alone off POSIX).

        The group is signalled even when the direct child has already been
        reaped: a grandchild can outlive the shell while still holding the
        output pipes.
        """
        process = self._process
        if process is None:
            return
        if not hasattr(os, "killpg"):
            if process.returncode is None:
                process.kill()
                logger.warning("process_killed", command=self.command, pid=process.pid)
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            # Group is empty.
            return
        except PermissionError:
            if process.returncode is None:
                process.kill()
        logger.warning("process_killed", command=self.command, pid=process.pid)

    async def close(self) -> None:
        """Kill if still running, stop the drain tasks, and reap the child."""
        process = self._process
        if process is None:
            return
        self.kill()
        for task in self._pumps:
            if not task.done():
                task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        if process.returncode is None:
            await process.wait()

    async def _pump(self, stream: asyncio.StreamReader, origin: StreamOrigin) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Over-long line: the reader discarded it, keep draining.
                self._emit(f"[line longer than {STREAM_LIMIT} bytes truncated]", origin)
                continue
            if not raw:
                return
            self._emit(raw.decode("utf-8", errors="replace").rstrip("\r\n"), origin)

    def _emit(self, text: str, origin: StreamOrigin) -> None:
        self._tail.append(text)
        self._sink.log(text, origin, self._target)

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise RuntimeError(f"{self!r} has not been spawned. Call spawn() first.")
        return self._process


async def run_command(
    program: str,
    args: list[str],
    *,
    sink: LogSink,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    target: BuildTarget | None = None,
    tail_lines: int = DEFAULT_TAIL_LINES,
) -> ExitStatus:
    """Run one command to completion, streaming its output into *sink*.

    Raises:
        CommandFailed: If the command cannot be started or exits non-zero.
            Carries the last *tail_lines* lines of output.
    """
    handle = ProcessHandle(
        program, args, sink=sink, cwd=cwd, env=env, target=target, tail_lines=tail_lines
    )
    sink.log(f"$ {handle.command}", StreamOrigin.ENGINE, target)
    async with handle:
        status = await handle.run()
    if not status.success:
        logger.warning("command_failed", command=handle.command, code=status.code)
        raise CommandFailed(program, args, status.code, handle.tail)
    return status


async def probe(
    program: str,
    args: list[str],
    *,
    env: Mapping[str, str] | None = None,
    name: str | None = None,
) -> ProbeResult:
    """Run a presence/version check without logging its output.

    The program is executed directly (no shell). A missing executable or a
    non-zero exit yields ``present=False``.

    Raises:
        ProbeFailure: If the check could not be carried out for another reason.
    """
    label = name or program
    try:
        process = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except (FileNotFoundError, NotADirectoryError):
        return ProbeResult(name=label, present=False, error="command not found")
    except OSError as exc:
        raise ProbeFailure(
            f"Could not run probe {program!r}: {exc}", details={"program": program}
        ) from exc

    try:
        stdout, _ = await process.communicate()
    finally:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    snippet = stdout.decode("utf-8", errors="replace").strip()[:PROBE_SNIPPET_CHARS]
    if process.returncode != 0:
        return ProbeResult(
            name=label, present=False, output=snippet, error=f"exit code {process.returncode}"
        )
    return ProbeResult(name=label, present=True, output=snippet)


class CommandRunner:
    """Binds the build environment and observer sink for every command a run issues.

    Pipelines and the dependency resolver talk to this object rather than to
    :func:`run_command` directly so tests can substitute a scripted runner.
    """

    def __init__(
        self,
        sink: LogSink,
        env: Mapping[str, str] | None = None,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self.sink = sink
        self.env = dict(env) if env is not None else None
        self.tail_lines = tail_lines

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        target: BuildTarget | None = None,
    ) -> ExitStatus:
        return await run_command(
            program,
            args,
            sink=self.sink,
            cwd=cwd,
            env=self.env,
            target=target,
            tail_lines=self.tail_lines,
        )

    async def probe(self, program: str, args: list[str], name: str | None = None) -> ProbeResult:
        return await probe(program, args, env=self.env, name=name)
