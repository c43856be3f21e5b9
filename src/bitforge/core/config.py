from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from bitforge.core.constants import MAX_LOG_LINES
from bitforge.core.exceptions import ConfigurationError


def default_build_dir() -> Path:
    """``~/Downloads/bitcoin_builds``, or ``/tmp/bitcoin_builds`` when there is no home."""
    home = os.environ.get("HOME")
    if home:
        return Path(home) / "Downloads" / "bitcoin_builds"
    return Path("/tmp/bitcoin_builds")


def default_cores() -> int:
    """All detected cores but one, and never fewer than one."""
    return max((os.cpu_count() or 1) - 1, 1)


class EngineConfig(BaseModel):
    build_dir: Path = Field(default_factory=default_build_dir)
    cores: int = Field(default_factory=default_cores, ge=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_capacity: int = Field(default=MAX_LOG_LINES, ge=1)
    event_capacity: int = Field(default=MAX_LOG_LINES * 2, ge=1)
    http_timeout: float = Field(default=15.0, gt=0, le=300)
    per_page: int = Field(default=30, ge=1, le=100)
    max_versions: int = Field(default=10, ge=1)
    worker_ceiling: int = Field(default=8, ge=1)
    cmake_threshold: int = Field(default=25, ge=0)
    """First Bitcoin Core major version built with CMake instead of autotools."""
    failure_tail_lines: int = Field(default=40, ge=0)
    probe_concurrency: int = Field(default=4, ge=1)
    brew_path: Path | None = None

    @property
    def worker_threads(self) -> int:
        return min(os.cpu_count() or 1, self.worker_ceiling)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create an :class:`EngineConfig` from ``BITFORGE_*`` environment variables.

        Reads the following env vars (all optional):

        * ``BITFORGE_BUILD_DIR`` → ``build_dir``
        * ``BITFORGE_CORES`` → ``cores`` (integer, at least 1)
        * ``BITFORGE_LOG_LEVEL`` → ``log_level`` (``DEBUG``, ``INFO``, ``WARNING``, ``ERROR``)
        * ``BITFORGE_LOG_CAPACITY`` → ``log_capacity``
        * ``BITFORGE_HTTP_TIMEOUT`` → ``http_timeout`` (seconds)
        * ``BITFORGE_MAX_VERSIONS`` → ``max_versions``
        * ``BITFORGE_BREW_PATH`` → ``brew_path``

        Any variable that is not set or is empty is left at its default value.

        Raises:
            ConfigurationError: If a variable holds a malformed or out-of-range value.
        """
        kwargs: dict[str, Any] = {}

        build_dir = os.environ.get("BITFORGE_BUILD_DIR")
        if build_dir:
            kwargs["build_dir"] = Path(build_dir).expanduser()

        cores = os.environ.get("BITFORGE_CORES")
        if cores:
            kwargs["cores"] = _convert("BITFORGE_CORES", cores, int)

        log_level = os.environ.get("BITFORGE_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level.upper()

        capacity = os.environ.get("BITFORGE_LOG_CAPACITY")
        if capacity:
            kwargs["log_capacity"] = _convert("BITFORGE_LOG_CAPACITY", capacity, int)

        timeout = os.environ.get("BITFORGE_HTTP_TIMEOUT")
        if timeout:
            kwargs["http_timeout"] = _convert("BITFORGE_HTTP_TIMEOUT", timeout, float)

        max_versions = os.environ.get("BITFORGE_MAX_VERSIONS")
        if max_versions:
            kwargs["max_versions"] = _convert("BITFORGE_MAX_VERSIONS", max_versions, int)

        brew_path = os.environ.get("BITFORGE_BREW_PATH")
        if brew_path:
            kwargs["brew_path"] = Path(brew_path)

        try:
            return cls(**kwargs)
        except PydanticValidationError as exc:
            fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
            raise ConfigurationError(
                f"Invalid configuration from environment: {', '.join(fields)}",
                details={"fields": fields},
            ) from exc


def _convert(name: str, raw: str, kind: type[int] | type[float]) -> Any:
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be {'an integer' if kind is int else 'a number'}, got {raw!r}",
            details={"variable": name, "value": raw},
        ) from exc
