"""Timer primitives for coalescing and rate-limiting capture events."""

import asyncio
from collections.abc import Callable
from typing import Any


class Debouncer:
    """Runs a callback once a quiet period passes without another ``schedule``."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        """Restart the quiet period."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class Throttle:
    """Leading-edge rate limiter: at most one call per ``interval`` seconds."""

    def __init__(self, interval: float, callback: Callable[..., None]) -> None:
        self.interval = interval
        self._callback = callback
        self._last: float | None = None

    def __call__(self, *args: Any) -> bool:
        """Invoke the callback unless still inside the interval. Returns whether it ran."""
        now = asyncio.get_running_loop().time()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        self._callback(*args)
        return True

    def reset(self) -> None:
        self._last = None
