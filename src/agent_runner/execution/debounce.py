"""Coalesce bursts of triggers into one call after a quiet period."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


class Debouncer:
    """Fire `action` once, `delay` seconds after the last `trigger()`."""

    def __init__(self, delay: float, action: Callable[[], None]) -> None:
        if delay < 0:
            raise ValueError("Debounce delay must be >= 0.")
        self.delay = delay
        self._action = action
        self._handle: asyncio.TimerHandle | None = None
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """(Re)arm the timer; must be called from the event loop thread."""

        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        self._action()
