"""Shell-argument hygiene for strings that end up on a ``sh -c`` command line.

Version tags come from the remote release index, so they are validated
against an allow-list first and then quoted anyway before interpolation.
"""
from __future__ import annotations

from bitforge.core.exceptions import InvalidVersionTag

_ALLOWED_PUNCTUATION = frozenset(".-_")


def validate_version_tag(tag: str) -> str:
    """Return *tag* unchanged if every character is alphanumeric, ``.``, ``-`` or ``_``.

    Raises:
        InvalidVersionTag: If *tag* is empty or contains any other character.
    """
    if not tag:
        raise InvalidVersionTag(tag, "tag is empty")
    for ch in tag:
        if not (ch.isalnum() or ch in _ALLOWED_PUNCTUATION):
            raise InvalidVersionTag(tag, f"disallowed character {ch!r}")
    return tag


def shell_quote(value: str) -> str:
    """Wrap *value* in single quotes, escaping embedded single quotes POSIX-style."""
    return "'" + value.replace("'", "'\\''") + "'"


def join_command(program: str, args: list[str]) -> str:
    """Render *program* and *args* as one fully quoted shell command line."""
    return " ".join(shell_quote(part) for part in [program, *args])
