"""Inactivity watchdog: resettable single-shot countdown for a turn."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class InactivityWatchdog:
    """Fires *on_timeout* once when no activity is seen for *timeout* seconds.

    ``start()`` arms (or re-arms) the countdown, ``reset()`` restarts an armed
    countdown, and ``stop()`` disarms it.  A disarmed watchdog never fires,
    even if its deadline had already passed when ``stop()`` was called.
    A *timeout* of zero disables the watchdog entirely.

    The watchdog only notifies; deciding whether to stop the turn is left
    to whoever receives the callback.
    """

    def __init__(self, timeout: float, on_timeout: Callable[[], None]) -> None:
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._task: asyncio.Task[None] | None = None
        self._generation = 0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def enabled(self) -> bool:
        return self._timeout > 0

    @property
    def armed(self) -> bool:
        """True while a countdown is pending."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Arm the countdown, restarting it if it is already running."""
        self._cancel()
        if not self.enabled:
            return
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(
            self._countdown(self._generation)
        )

    def reset(self) -> None:
        """Restart the countdown if armed; a no-op otherwise."""
        if self.armed:
            self.start()

    def stop(self) -> None:
        """Disarm the countdown."""
        self._generation += 1
        self._cancel()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _countdown(self, generation: int) -> None:
        try:
            await asyncio.sleep(self._timeout)
        except asyncio.CancelledError:
            return
        if generation != self._generation:
            return
        self._task = None
        try:
            self._on_timeout()
        except Exception:
            logger.exception("inactivity callback failed")
