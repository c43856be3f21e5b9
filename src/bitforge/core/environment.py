"""Homebrew discovery and construction of the child-process environment."""
from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

BREW_CANDIDATES: tuple[str, ...] = ("/opt/homebrew/bin/brew", "/usr/local/bin/brew")
SYSTEM_PATHS: tuple[str, ...] = ("/usr/bin", "/bin", "/usr/sbin", "/sbin")


def find_brew(candidates: tuple[str, ...] = BREW_CANDIDATES) -> Path | None:
    """Return the first existing ``brew`` binary, Apple Silicon location first."""
    for candidate in candidates:
        path = Path(candidate)
        if path.is_file():
            return path
    return None


def brew_prefix(brew: Path | str) -> str:
    return "/opt/homebrew" if "/opt/homebrew" in str(brew) else "/usr/local"


def llvm_candidates(prefix: str | None) -> list[str]:
    candidates = [f"{prefix}/opt/llvm"] if prefix else []
    candidates += ["/opt/homebrew/opt/llvm", "/usr/local/opt/llvm"]
    return candidates


def dedupe_path(parts: list[str]) -> str:
    """Join *parts* with ``:``, dropping empty entries and later duplicates."""
    seen: set[str] = set()
    kept: list[str] = []
    for part in parts:
        if part and part not in seen:
            seen.add(part)
            kept.append(part)
    return ":".join(kept)


def build_environment(
    prefix: str | None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return a complete environment for build children.

    Homebrew, Cargo and LLVM locations are put ahead of the inherited ``PATH``
    and the standard system directories are appended. When an LLVM install is
    found, ``LIBCLANG_PATH`` and ``DYLD_LIBRARY_PATH`` point at its ``lib``
    directory so bindgen-based crates can locate libclang.

    Args:
        prefix: Homebrew prefix (``/opt/homebrew`` or ``/usr/local``), if any.
        base: Environment to extend. Defaults to :data:`os.environ`.
    """
    env = dict(os.environ if base is None else base)
    home = env.get("HOME", str(Path.home()))

    parts: list[str] = []
    if prefix:
        parts.append(f"{prefix}/bin")
    parts += ["/opt/homebrew/bin", "/usr/local/bin"]

    cargo_bin = f"{home}/.cargo/bin"
    if Path(cargo_bin).is_dir():
        parts.append(cargo_bin)

    llvm_found: str | None = None
    for candidate in llvm_candidates(prefix):
        if Path(candidate, "bin").is_dir():
            llvm_found = candidate
            parts.append(f"{candidate}/bin")
            break

    parts += env.get("PATH", "").split(":")
    parts += SYSTEM_PATHS
    env["PATH"] = dedupe_path(parts)

    if llvm_found is not None:
        lib = f"{llvm_found}/lib"
        env["LIBCLANG_PATH"] = lib
        env["DYLD_LIBRARY_PATH"] = lib

    logger.debug("build_environment_ready", prefix=prefix, llvm=llvm_found)
    return env
