from __future__ import annotations

from typing import Any


class BitforgeError(Exception):
    """Base exception for all bitforge errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"INVALID_TAG"``).
        details: Arbitrary key/value context about the error.
        status_code: HTTP status code when the error originates from the
            remote release index (``None`` when not applicable).
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        """Whether the caller may re-invoke the failed operation."""
        return False


class ConfigurationError(BitforgeError): ...


class ValidationError(BitforgeError): ...


class InvalidVersionTag(ValidationError):
    """A version tag contains characters outside the shell-safe allow-list."""

    def __init__(self, tag: str, reason: str = "disallowed characters") -> None:
        super().__init__(
            f"Invalid version tag {tag!r}: {reason}",
            code="INVALID_TAG",
            details={"tag": tag},
        )
        self.tag = tag


class NetworkError(BitforgeError):
    """Transport failure or non-success response from the release index."""

    @property
    def is_retryable(self) -> bool:
        return True


class ParseError(BitforgeError):
    """The release index returned a body that could not be interpreted."""

    @property
    def is_retryable(self) -> bool:
        return True


class ProbeFailure(BitforgeError):
    """A presence probe could not be carried out (distinct from "not present")."""


class CommandFailed(BitforgeError):
    """A supervised command exited with a non-zero status.

    ``output_tail`` holds the last captured lines of the command's output so
    the failure can be rendered with context.
    """

    def __init__(
        self,
        program: str,
        args: list[str],
        exit_code: int | None,
        output_tail: list[str] | None = None,
    ) -> None:
        shown = " ".join([program, *args])
        status = "could not be started" if exit_code is None else f"exited with {exit_code}"
        super().__init__(
            f"Command `{shown}` {status}",
            code="COMMAND_FAILED",
            details={"program": program, "args": list(args), "exit_code": exit_code},
        )
        self.program = program
        self.args_list = list(args)
        self.exit_code = exit_code
        self.output_tail = list(output_tail or [])


class ToolchainMissing(BitforgeError): ...


class BinaryNotFound(BitforgeError):
    """An expected artifact is absent after a compile that reported success."""

    def __init__(self, binary: str, searched: str) -> None:
        super().__init__(
            f"Expected binary {binary!r} not found in {searched}",
            code="BINARY_NOT_FOUND",
            details={"binary": binary, "searched": searched},
        )
        self.binary = binary
        self.searched = searched


class BuildFailed(BitforgeError):
    """A build pipeline stopped at ``stage`` because of ``cause``."""

    def __init__(
        self,
        target: str,
        version: str,
        stage: str,
        cause: BaseException,
        output_tail: list[str] | None = None,
    ) -> None:
        super().__init__(
            f"{target} {version} failed during {stage}: {cause}",
            code="BUILD_FAILED",
            details={"target": target, "version": version, "stage": stage},
        )
        self.target = target
        self.version = version
        self.stage = stage
        self.cause = cause
        if output_tail is None and isinstance(cause, CommandFailed):
            output_tail = cause.output_tail
        self.output_tail = list(output_tail or [])

    def render(self, tail_lines: int = 20) -> str:
        """Return one summary line followed by the last *tail_lines* output lines."""
        lines = [str(self)]
        tail = self.output_tail[-tail_lines:] if tail_lines > 0 else []
        if tail:
            lines.append(f"--- last {len(tail)} line(s) of output ---")
            lines.extend(tail)
        return "\n".join(lines)


class ConfirmationInProgress(BitforgeError):
    """A confirmation was requested while another one is still outstanding."""


class EngineBusy(BitforgeError):
    """A job was submitted while the engine is still running another one."""
