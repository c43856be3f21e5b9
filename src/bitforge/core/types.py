from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from bitforge.core.constants import (
    BuildTarget,
    DependencyOutcome,
    EventKind,
    Outcome,
    PackageState,
    PipelineStage,
    StreamOrigin,
)
from bitforge.core.exceptions import BitforgeError, ValidationError
from bitforge.core.shell import validate_version_tag

_MAJOR_MINOR_RE = re.compile(r"^(\d+)\.(\d+)")
_LEADING_DIGITS_RE = re.compile(r"^(\d+)")


class LogLine(BaseModel):
    seq: int
    text: str
    origin: StreamOrigin = StreamOrigin.ENGINE
    timestamp: float = Field(default_factory=time.time)


class EngineEvent(BaseModel):
    """One entry of the ordered observer stream.

    Exactly one of ``line``, ``progress``, ``stage`` or ``outcome`` is set,
    matching ``kind``.
    """

    seq: int
    kind: EventKind
    timestamp: float = Field(default_factory=time.time)
    target: BuildTarget | None = None
    line: LogLine | None = None
    progress: float | None = None
    stage: PipelineStage | None = None
    label: str | None = None
    outcome: Outcome | None = None
    message: str | None = None


class VersionTag(BaseModel):
    raw: str
    components: tuple[int, ...] = ()
    prerelease: bool = False

    @classmethod
    def parse(cls, raw: str, prerelease: bool = False) -> VersionTag:
        """Build a tag, deriving numeric components from each dot-separated part.

        A part without leading digits counts as ``0``.
        """
        stripped = raw.lstrip("v")
        components: list[int] = []
        for part in stripped.split("."):
            match = _LEADING_DIGITS_RE.match(part)
            components.append(int(match.group(1)) if match else 0)
        return cls(raw=raw, components=tuple(components), prerelease=prerelease)

    @property
    def major_minor(self) -> tuple[int, int]:
        """``(major, minor)`` of the tag, or ``(0, 0)`` when it does not start with ``N.N``."""
        return parse_major_minor(self.raw)

    def __str__(self) -> str:
        return self.raw


def parse_major_minor(tag: str) -> tuple[int, int]:
    match = _MAJOR_MINOR_RE.match(tag.lstrip("v"))
    if match is None:
        return (0, 0)
    return (int(match.group(1)), int(match.group(2)))


def strip_version_prefix(tag: str) -> str:
    return tag[1:] if tag.startswith("v") else tag


class BuildRequest(BaseModel):
    """Everything one build run needs, validated before any process is spawned."""

    targets: list[BuildTarget]
    versions: dict[BuildTarget, str]
    build_dir: Path
    cores: int = 1

    @field_validator("targets")
    @classmethod
    def _order_targets(cls, value: list[BuildTarget]) -> list[BuildTarget]:
        if not value:
            raise ValidationError("At least one build target must be selected")
        # Bitcoin Core always builds before Electrs.
        order = list(BuildTarget)
        return sorted(set(value), key=order.index)

    @field_validator("cores")
    @classmethod
    def _clamp_cores(cls, value: int) -> int:
        if value < 1:
            raise ValidationError(f"Core count must be at least 1, got {value}")
        return min(value, os.cpu_count() or 1)

    @field_validator("build_dir")
    @classmethod
    def _expand_build_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _check_versions(self) -> BuildRequest:
        for target in self.targets:
            tag = self.versions.get(target)
            if tag is None:
                raise ValidationError(
                    f"No version selected for {target.display_name}",
                    details={"target": str(target)},
                )
            validate_version_tag(tag)
        return self

    def version_for(self, target: BuildTarget) -> str:
        return self.versions[target]

    def prepare_build_dir(self) -> Path:
        """Create the build directory if needed and verify it is writable.

        Raises:
            ValidationError: If the directory cannot be created or written to.
        """
        try:
            self.build_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ValidationError(
                f"Cannot create build directory {self.build_dir}: {exc}",
                details={"build_dir": str(self.build_dir)},
            ) from exc
        if not self.build_dir.is_dir() or not os.access(self.build_dir, os.W_OK | os.X_OK):
            raise ValidationError(
                f"Build directory {self.build_dir} is not writable",
                details={"build_dir": str(self.build_dir)},
            )
        return self.build_dir


class ExitStatus(BaseModel):
    code: int
    """Process return code; negative values are the signal that terminated it."""

    @property
    def success(self) -> bool:
        return self.code == 0


class ProbeResult(BaseModel):
    name: str
    present: bool
    output: str = ""
    error: str | None = None


class PackageStatus(BaseModel):
    name: str
    state: PackageState
    probe_error: str | None = None
    install_error: str | None = None

    @property
    def present(self) -> bool:
        return self.state in (PackageState.PRESENT, PackageState.NEWLY_INSTALLED)


class DependencyReport(BaseModel):
    outcome: DependencyOutcome
    packages: dict[str, PackageStatus] = Field(default_factory=dict)
    message: str | None = None

    def names_in(self, state: PackageState) -> list[str]:
        return [name for name, status in self.packages.items() if status.state == state]

    @property
    def missing(self) -> list[str]:
        return [
            name
            for name, status in self.packages.items()
            if status.state in (PackageState.MISSING, PackageState.STILL_MISSING)
        ]

    @property
    def newly_installed(self) -> list[str]:
        return self.names_in(PackageState.NEWLY_INSTALLED)

    @property
    def still_missing(self) -> list[str]:
        return self.names_in(PackageState.STILL_MISSING)


class TargetResult(BaseModel):
    target: BuildTarget
    version: str
    output_dir: Path
    binaries: list[Path] = Field(default_factory=list)


class RunResult(BaseModel):
    model_config = {"arbitrary_types_allowed": True}

    outcome: Outcome
    completed: list[TargetResult] = Field(default_factory=list)
    error: BitforgeError | None = None

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def summary(self) -> dict[str, Any]:
        return {
            "outcome": str(self.outcome),
            "completed": [f"{r.target}-{strip_version_prefix(r.version)}" for r in self.completed],
            "error": str(self.error) if self.error else None,
        }
