"""
bitforge command line.

Usage:
    bitforge versions bitcoin
    bitforge deps --yes
    bitforge build --target both --cores 6
"""

from __future__ import annotations

import concurrent.futures
import os
import sys
from pathlib import Path
from typing import Any, TypeVar

import click

from bitforge.__version__ import __version__
from bitforge.core.config import EngineConfig
from bitforge.core.constants import (
    BuildTarget,
    DependencyOutcome,
    EventKind,
    Outcome,
    StreamOrigin,
)
from bitforge.core.exceptions import BitforgeError
from bitforge.core.types import DependencyReport, EngineEvent
from bitforge.runtime.engine import BuildEngine, JobHandle
from bitforge.utils.logging import configure_logging

T = TypeVar("T")

EXIT_FAILED = 1
EXIT_CANCELLED = 130
POLL_SECONDS = 0.2

_OUTCOME_COLOURS = {
    Outcome.SUCCEEDED: "green",
    Outcome.FAILED: "red",
    Outcome.CANCELLED: "yellow",
    Outcome.DECLINED: "yellow",
}

_TARGET_CHOICES = {
    "bitcoin": [BuildTarget.BITCOIN_CORE],
    "electrs": [BuildTarget.ELECTRS],
    "both": [BuildTarget.BITCOIN_CORE, BuildTarget.ELECTRS],
}


class JobCancelled(Exception):
    """The user interrupted a job and it has fully stopped."""


def render_event(event: EngineEvent) -> None:
    if event.kind == EventKind.LOG and event.line is not None:
        click.echo(event.line.text, err=event.line.origin == StreamOrigin.STDERR)
    elif event.kind == EventKind.STAGE:
        click.secho(f"==> {event.label}", fg="cyan", bold=True)
    elif event.kind == EventKind.PROGRESS and event.progress is not None:
        click.secho(f"    [{event.progress:6.1%}]", fg="blue")
    elif event.kind == EventKind.OUTCOME and event.outcome is not None:
        colour = _OUTCOME_COLOURS.get(event.outcome, "white")
        click.secho(f"*** {event.outcome}: {event.message or ''}", fg=colour, bold=True)


def drive(engine: BuildEngine, job: JobHandle[T], assume_yes: bool = False) -> T:
    """Act as the control thread until *job* finishes.

    Renders observer events as they arrive and answers confirmation requests,
    either interactively or automatically with *assume_yes*. Ctrl-C cancels
    the job and waits until it has fully stopped.

    Raises:
        JobCancelled: If the user interrupted the job.
    """
    since = 0
    answered: set[str] = set()

    def flush() -> None:
        nonlocal since
        for event in engine.events.poll(since):
            render_event(event)
            since = event.seq

    try:
        while not job.done:
            for event in engine.events.wait(since, timeout=POLL_SECONDS):
                render_event(event)
                since = event.seq
            request = engine.confirmations.pending()
            if request is not None and request.request_id not in answered:
                answered.add(request.request_id)
                if assume_yes:
                    click.echo(f"{request.title}: yes (--yes)")
                    answer = True
                else:
                    answer = click.confirm(f"{request.title}\n\n{request.message}", default=False)
                engine.confirmations.respond(request.request_id, answer)
    except (KeyboardInterrupt, click.Abort):
        click.secho("\nCancelling, waiting for running commands to stop...", fg="yellow", err=True)
        job.cancel()
        job.wait()
        flush()
        raise JobCancelled() from None

    flush()
    try:
        return job.result()
    except concurrent.futures.CancelledError:
        raise JobCancelled() from None


def _engine(ctx: click.Context, **overrides: Any) -> BuildEngine:
    config: EngineConfig = ctx.obj["config"]
    if overrides:
        config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})
    return BuildEngine(config)


@click.group()
@click.version_option(version=__version__, prog_name="bitforge")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Diagnostic log level (default: BITFORGE_LOG_LEVEL or WARNING).",
)
@click.option("--json-logs", is_flag=True, help="Emit diagnostic logs as JSON.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, json_logs: bool) -> None:
    """Build Bitcoin Core and Electrs from source."""
    ctx.ensure_object(dict)
    try:
        config = EngineConfig.from_env()
    except BitforgeError as exc:
        raise click.UsageError(f"Invalid BITFORGE_* environment: {exc}") from exc
    ctx.obj["config"] = config

    level = log_level or os.environ.get("BITFORGE_LOG_LEVEL") or "WARNING"
    configure_logging(level.upper(), json=json_logs, stream=sys.stderr)


@cli.command()
@click.argument("target", type=click.Choice([t.value for t in BuildTarget]))
@click.pass_context
def versions(ctx: click.Context, target: str) -> None:
    """List the stable release tags available for TARGET, newest first."""
    with _engine(ctx) as engine:
        try:
            tags = drive(engine, engine.submit_fetch_versions(BuildTarget(target)))
        except JobCancelled:
            ctx.exit(EXIT_CANCELLED)
        except BitforgeError as exc:
            click.secho(f"Error: {exc}", fg="red", err=True)
            ctx.exit(EXIT_FAILED)
    for tag in tags:
        click.echo(tag.raw)


@cli.command()
@click.option(
    "--yes", "-y", "assume_yes", is_flag=True, help="Install missing packages without asking."
)
@click.pass_context
def deps(ctx: click.Context, assume_yes: bool) -> None:
    """Check build dependencies and offer to install missing ones."""
    with _engine(ctx) as engine:
        try:
            report: DependencyReport = drive(engine, engine.submit_dependency_check(), assume_yes)
        except JobCancelled:
            ctx.exit(EXIT_CANCELLED)

    for name, status in report.packages.items():
        colour = "green" if status.present else "red"
        click.secho(f"  {name:<12} {status.state}", fg=colour)
    if report.outcome in (DependencyOutcome.ALL_PRESENT, DependencyOutcome.DONE):
        if report.still_missing:
            click.secho(
                f"Still missing: {', '.join(report.still_missing)}", fg="yellow", err=True
            )
        return
    ctx.exit(EXIT_FAILED)


@cli.command()
@click.option(
    "--target",
    "target_choice",
    type=click.Choice(list(_TARGET_CHOICES)),
    default="bitcoin",
    show_default=True,
    help="What to build.",
)
@click.option("--bitcoin-version", default=None, help="Bitcoin Core tag (default: newest stable).")
@click.option("--electrs-version", default=None, help="Electrs tag (default: newest stable).")
@click.option(
    "--build-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Build directory (default: BITFORGE_BUILD_DIR or ~/Downloads/bitcoin_builds).",
)
@click.option("--cores", type=click.IntRange(min=1), default=None, help="Parallel compile jobs.")
@click.pass_context
def build(
    ctx: click.Context,
    target_choice: str,
    bitcoin_version: str | None,
    electrs_version: str | None,
    build_dir: Path | None,
    cores: int | None,
) -> None:
    """Clone, configure, compile and install the selected targets."""
    targets = _TARGET_CHOICES[target_choice]
    selected = {
        BuildTarget.BITCOIN_CORE: bitcoin_version,
        BuildTarget.ELECTRS: electrs_version,
    }

    with _engine(ctx, build_dir=build_dir, cores=cores) as engine:
        try:
            tags: dict[BuildTarget, str] = {}
            for target in targets:
                tag = selected[target]
                if tag is None:
                    resolved = drive(engine, engine.submit_fetch_versions(target))
                    if not resolved:
                        raise click.ClickException(
                            f"No stable {target.display_name} release found"
                        )
                    tag = resolved[0].raw
                    click.echo(f"Using newest {target.display_name} release {tag}")
                tags[target] = tag
            request = engine.make_request(targets, tags)
            result = drive(engine, engine.submit_build(request))
        except JobCancelled:
            ctx.exit(EXIT_CANCELLED)
        except BitforgeError as exc:
            click.secho(f"Error: {exc}", fg="red", err=True)
            ctx.exit(EXIT_FAILED)

    for done in result.completed:
        click.secho(f"{done.target.display_name} {done.version}: {done.output_dir}", fg="green")
    if not result.success:
        ctx.exit(EXIT_FAILED)


def main() -> None:
    cli(prog_name="bitforge")
