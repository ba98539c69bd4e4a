"""
Event-loop debouncer: run a callback once input has been quiet for `delay` seconds.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

SEARCH_DEBOUNCE_S = 0.5

logger = logging.getLogger("inbox_sync.debounce")


class Debouncer:
    def __init__(self, callback: Callable[..., Any], delay: float = SEARCH_DEBOUNCE_S):
        self._callback = callback
        self._delay = delay
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def __call__(self, *args: Any) -> None:
        self.cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._fire, args)

    def _fire(self, args: tuple[Any, ...]) -> None:
        self._timer = None
        result = self._callback(*args)
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._done)

    @staticmethod
    def _done(task: "asyncio.Task[Any]") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Debounced callback failed: {task.exception()!r}")

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self) -> None:
        """Drop the scheduled call and any callback still running."""
        self.cancel_timer()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
