"""Cancellable scheduled calls for debounced work on the asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledCall:
    """A coroutine callback that runs after ``delay`` seconds unless cancelled.

    Cancellation only affects a call that has not fired yet. Once the
    callback has started it runs to completion.
    """

    def __init__(self, delay: float, callback: Callback) -> None:
        self.delay = delay
        self.fired = False
        self.cancelled = False
        self._task = asyncio.ensure_future(self._run(callback))

    async def _run(self, callback: Callback) -> None:
        await asyncio.sleep(self.delay)
        self.fired = True
        await callback()

    @property
    def pending(self) -> bool:
        """True while the delay is still running."""
        return not (self.fired or self.cancelled or self._task.done())

    @property
    def task(self) -> asyncio.Task:
        return self._task

    def cancel(self) -> bool:
        """Cancel if not yet fired. Returns True if a pending call was cancelled."""
        if not self.pending:
            return False
        self.cancelled = True
        self._task.cancel()
        return True


class Debouncer:
    """Holds at most one pending ScheduledCall; scheduling again replaces it."""

    def __init__(self) -> None:
        self._current: ScheduledCall | None = None

    @property
    def pending(self) -> bool:
        return self._current is not None and self._current.pending

    def schedule(self, delay: float, callback: Callback) -> ScheduledCall:
        self.cancel()
        self._current = ScheduledCall(delay, callback)
        return self._current

    def cancel(self) -> bool:
        if self._current is None:
            return False
        cancelled = self._current.cancel()
        if cancelled:
            logger.debug("Cancelled pending call")
        return cancelled
