"""Diagnostic logging for the engine itself.

Modules log through ``structlog.get_logger(__name__)``. Nothing here touches
the observer channel: compiler output and stage progress reach callers as
events, while this log records spawns, kills, retries and state changes for
whoever is debugging bitforge.
"""
from __future__ import annotations

import logging
import sys
from typing import IO

import structlog

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
]


def _renderer(json: bool, out: IO[str]) -> structlog.types.Processor:
    if json:
        return structlog.processors.JSONRenderer()
    isatty = getattr(out, "isatty", None)
    return structlog.dev.ConsoleRenderer(colors=bool(isatty and isatty()))


def configure_logging(level: str = "INFO", json: bool = True, stream: IO[str] | None = None) -> None:
    """Route structlog and stdlib ``logging`` records through one handler on *stream*.

    Calling it again replaces the previous handler, so the CLI and tests can
    reconfigure freely.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"WARNING"``. Unknown names
            fall back to ``INFO``.
        json: One JSON object per line when true, human-readable console
            lines otherwise.
        stream: Destination, stdout when omitted. The CLI passes stderr so
            the diagnostic log stays apart from streamed build output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    out = stream if stream is not None else sys.stdout

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json, out),
            ],
            foreign_pre_chain=_PRE_CHAIN,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
