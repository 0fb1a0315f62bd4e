"""A single request/response cycle backed by one agent process."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field

from conduit.protocol.messages import ResultMessage

#: Stderr lines retained per turn for diagnostics.
_STDERR_HISTORY = 200


@dataclass
class StreamBuffer:
    """Accumulates streamed text and reasoning for the current message.

    Text and reasoning are kept apart.  A complete assistant message seals
    each kind it carries with its authoritative content; the next fragment
    of a sealed kind starts that kind afresh and leaves the other alone.
    """

    text: str = ""
    thinking: str = ""
    text_sealed: bool = False
    thinking_sealed: bool = False

    def append_text(self, fragment: str) -> str:
        if self.text_sealed:
            self.text = ""
            self.text_sealed = False
        self.text += fragment
        return self.text

    def append_thinking(self, fragment: str) -> str:
        if self.thinking_sealed:
            self.thinking = ""
            self.thinking_sealed = False
        self.thinking += fragment
        return self.thinking

    def supersede(self, text: str | None, thinking: str | None) -> None:
        """Replace streamed content with the final text of a complete message."""
        if text is not None:
            self.text = text
            self.text_sealed = True
        if thinking is not None:
            self.thinking = thinking
            self.thinking_sealed = True


@dataclass(eq=False)
class Turn:
    """One user message in, one result out, on its own process."""

    number: int
    argv: list[str]
    process: asyncio.subprocess.Process | None = None
    reader: asyncio.Task[None] | None = None
    stderr_reader: asyncio.Task[None] | None = None
    buffer: StreamBuffer = field(default_factory=StreamBuffer)
    block_types: dict[int, str] = field(default_factory=dict)
    result: ResultMessage | None = None
    exit_code: int | None = None
    stderr_lines: deque[str] = field(
        default_factory=lambda: deque(maxlen=_STDERR_HISTORY)
    )

    @property
    def result_seen(self) -> bool:
        return self.result is not None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines)

    def close_input(self) -> None:
        """Close the process's stdin, signalling that no more input follows."""
        proc = self.process
        if proc is None or proc.stdin is None:
            return
        with contextlib.suppress(OSError, RuntimeError):
            proc.stdin.close()

    def cancel_readers(self) -> list[asyncio.Task[None]]:
        """Cancel the stdout/stderr readers and return them for awaiting."""
        tasks = [t for t in (self.reader, self.stderr_reader) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        return tasks
