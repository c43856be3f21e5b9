from __future__ import annotations

from enum import StrEnum


class BuildTarget(StrEnum):
    BITCOIN_CORE = "bitcoin"
    ELECTRS = "electrs"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    BuildTarget.BITCOIN_CORE: "Bitcoin Core",
    BuildTarget.ELECTRS: "Electrs",
}


class PipelineStage(StrEnum):
    CLONE = "clone"
    CONFIGURE = "configure"
    COMPILE = "compile"
    COPY = "copy"
    COMPLETE = "complete"


class StreamOrigin(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"
    ENGINE = "engine"  # lines produced by bitforge itself


class EventKind(StrEnum):
    LOG = "log"
    PROGRESS = "progress"
    STAGE = "stage"
    OUTCOME = "outcome"


class Outcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class DependencyOutcome(StrEnum):
    ALL_PRESENT = "all_present"
    DONE = "done"
    DECLINED = "declined"
    FAILED = "failed"


class ResolverState(StrEnum):
    PROBING = "probing"
    ALL_PRESENT = "all_present"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    INSTALLING = "installing"
    REPROBING = "reprobing"
    DONE = "done"
    DECLINED = "declined"
    FAILED = "failed"


class PackageState(StrEnum):
    PRESENT = "present"
    NEWLY_INSTALLED = "newly_installed"
    STILL_MISSING = "still_missing"
    MISSING = "missing"


RELEASE_INDEX_URLS: dict[BuildTarget, str] = {
    BuildTarget.BITCOIN_CORE: "https://api.github.com/repos/bitcoin/bitcoin/releases",
    BuildTarget.ELECTRS: "https://api.github.com/repos/romanz/electrs/releases",
}

REPOSITORY_URLS: dict[BuildTarget, str] = {
    BuildTarget.BITCOIN_CORE: "https://github.com/bitcoin/bitcoin.git",
    BuildTarget.ELECTRS: "https://github.com/romanz/electrs.git",
}

# Homebrew formulae needed by either build. The Rust toolchain is probed separately.
REQUIRED_PACKAGES: tuple[str, ...] = (
    "automake",
    "libtool",
    "pkg-config",
    "boost",
    "miniupnpc",
    "zeromq",
    "sqlite",
    "python",
    "cmake",
    "llvm",
    "libevent",
    "rocksdb",
    "git",
)

RUST_TOOLCHAIN = "rust"

MAX_LOG_LINES = 4000
USER_AGENT = "bitforge-build-engine"
