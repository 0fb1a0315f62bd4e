"""Helpers for interpreting agent stderr output."""

from __future__ import annotations

import re

#: Stderr lines matching this pattern are escalated to the caller.
_DIAGNOSTIC_RE = re.compile(
    r"\b(error|warn(ing)?|fatal|exception|traceback|panic|failed)\b",
    re.IGNORECASE,
)


def is_diagnostic_line(line: str) -> bool:
    """True if a stderr line looks like a warning or an error."""
    return bool(_DIAGNOSTIC_RE.search(line))


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)
