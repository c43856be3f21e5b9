"""bitforge: build Bitcoin Core and Electrs from source, safely cancellable."""

from bitforge.__version__ import __version__
from bitforge.confirm.channel import ConfirmationChannel, ConfirmationRequest
from bitforge.core.config import EngineConfig
from bitforge.core.constants import (
    BuildTarget,
    DependencyOutcome,
    EventKind,
    Outcome,
    PackageState,
    PipelineStage,
    StreamOrigin,
)
from bitforge.core.exceptions import (
    BinaryNotFound,
    BitforgeError,
    BuildFailed,
    CommandFailed,
    ConfigurationError,
    ConfirmationInProgress,
    EngineBusy,
    InvalidVersionTag,
    NetworkError,
    ParseError,
    ProbeFailure,
    ToolchainMissing,
    ValidationError,
)
from bitforge.core.shell import shell_quote, validate_version_tag
from bitforge.core.types import (
    BuildRequest,
    DependencyReport,
    EngineEvent,
    ExitStatus,
    LogLine,
    ProbeResult,
    RunResult,
    TargetResult,
    VersionTag,
)
from bitforge.deps.resolver import DependencyResolver, HomebrewPackageManager, PackageManager
from bitforge.events.aggregator import LogAggregator
from bitforge.pipeline.build import BitcoinCoreRecipe, BuildPipeline, ElectrsRecipe
from bitforge.pipeline.coordinator import PipelineCoordinator
from bitforge.process.supervisor import CommandRunner, ProcessHandle, probe, run_command
from bitforge.runtime.engine import BuildEngine, JobHandle
from bitforge.versions.resolver import VersionResolver

__all__ = [
    "__version__",
    # Runtime
    "BuildEngine",
    "JobHandle",
    "EngineConfig",
    # Pipeline
    "BuildPipeline",
    "BitcoinCoreRecipe",
    "ElectrsRecipe",
    "PipelineCoordinator",
    # Processes
    "CommandRunner",
    "ProcessHandle",
    "run_command",
    "probe",
    # Channels
    "LogAggregator",
    "ConfirmationChannel",
    "ConfirmationRequest",
    # Resolvers
    "VersionResolver",
    "DependencyResolver",
    "PackageManager",
    "HomebrewPackageManager",
    # Shell hygiene
    "validate_version_tag",
    "shell_quote",
    # Types
    "BuildRequest",
    "DependencyReport",
    "EngineEvent",
    "ExitStatus",
    "LogLine",
    "ProbeResult",
    "RunResult",
    "TargetResult",
    "VersionTag",
    # Constants
    "BuildTarget",
    "DependencyOutcome",
    "EventKind",
    "Outcome",
    "PackageState",
    "PipelineStage",
    "StreamOrigin",
    # Exceptions
    "BitforgeError",
    "BinaryNotFound",
    "BuildFailed",
    "CommandFailed",
    "ConfigurationError",
    "ConfirmationInProgress",
    "EngineBusy",
    "InvalidVersionTag",
    "NetworkError",
    "ParseError",
    "ProbeFailure",
    "ToolchainMissing",
    "ValidationError",
]
