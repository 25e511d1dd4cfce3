"""Command-argument normalization applied before any tool-server launch."""

from typing import Any, Iterable

_QUOTES = ('"', "'")


def sanitize_arg(value: Any) -> str:
    """Strip one layer of matching quotes from a fully wrapped argument.

    ``'"--flag"'`` becomes ``--flag``; ``--flag`` is returned as-is.
    Non-string input yields an empty string.
    """
    if not isinstance(value, str):
        return ""
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def sanitize_args(values: Iterable[Any]) -> list[str]:
    """Sanitize every argument in a launch argument list."""
    return [sanitize_arg(v) for v in values]


def parse_args_string(text: str) -> list[str]:
    """Split a comma-separated argument string as typed into the settings form."""
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]
