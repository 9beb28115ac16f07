"""
Local turn countdown.

Each turn gets a fixed duration. The countdown runs as a background task and
fires its timeout callback when the duration elapses. A guest re-arms it with
the host's authoritative remaining time at every sync tick, so the two
displays drift apart by at most one sync interval.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class TurnCountdown:
    """Countdown for the active turn with remaining time and deadline."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._active_task: asyncio.Task[None] | None = None
        self._on_timeout: Callable[[], Awaitable[None]] | None = None
        self._deadline: float | None = None

    @property
    def running(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    @property
    def deadline(self) -> float | None:
        """Clock value at which the turn expires, or None when not running."""
        return self._deadline

    @property
    def remaining(self) -> float:
        """Seconds left in the turn (0 when expired or not started)."""
        if self._deadline is None:
            return 0.0
        return max(0.0, self._deadline - self._clock())

    def start(self, seconds: float, on_timeout: Callable[[], Awaitable[None]]) -> None:
        """Start (or restart) the countdown for ``seconds``."""
        self.cancel()
        self._on_timeout = on_timeout
        self._deadline = self._clock() + seconds
        self._active_task = asyncio.create_task(self._run_timer(seconds, on_timeout))

    def reset(self, seconds: float) -> None:
        """Re-arm the running countdown with a corrected remaining time."""
        if self._on_timeout is None:
            return
        self.start(max(0.0, seconds), self._on_timeout)

    def cancel(self) -> None:
        """Stop the countdown without firing the timeout.

        When called from inside the timeout callback the task is left to
        finish, since cancelling it would abort the callback itself.
        """
        task = self._active_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._active_task = None
        self._deadline = None

    def stop(self) -> None:
        """Cancel and forget the timeout callback; ``reset`` is a no-op until the next ``start``."""
        self.cancel()
        self._on_timeout = None

    async def _run_timer(self, seconds: float, on_timeout: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(seconds)
            await on_timeout()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("turn timeout callback failed")
