"""Event recorder: append-only JSONL transcript of session events."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import IO

from pydantic import BaseModel


class EventRecorder:
    """Appends each session event to *path* as one JSON object per line.

    Writes from any thread are serialized by a lock, and every line is
    flushed as soon as it is written so a crash loses nothing recorded.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._count = 0
        self._closed = False
        path.parent.mkdir(parents=True, exist_ok=True)
        self._fh: IO[str] | None = path.open("a", encoding="utf-8")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def event_count(self) -> int:
        """Events written since the recorder was opened."""
        return self._count

    def record(self, event: BaseModel) -> None:
        """Write *event* as one JSON line and flush.

        Events recorded after close() are discarded.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            self._fh.write(event.model_dump_json() + "\n")
            self._fh.flush()
            self._count += 1

    def close(self) -> None:
        """Close the file handle.  Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None and not self._fh.closed:
                self._fh.close()
            self._fh = None
