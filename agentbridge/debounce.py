"""
Trailing debounce as a (deadline, payload) state machine.

Each push replaces the payload and moves the deadline. One wake task per
debouncer sleeps until the deadline, re-checks it, and only then hands the
payload to the callback. Pushing never cancels a task, so there is no race
between re-arming and firing.
"""
import asyncio
import inspect
from typing import Any, Callable, Optional

from .logging_config import get_logger

logger = get_logger("agentbridge.debounce")


class Debouncer:
    def __init__(self, delay: float, callback: Callable[[Any], Any], name: str = ""):
        self.delay = delay
        self.name = name
        self._callback = callback
        self._payload: Any = None
        self._pending = False
        self._deadline = 0.0
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def payload(self) -> Any:
        return self._payload

    def push(self, payload: Any):
        """Replace the pending payload and restart the quiet period."""
        loop = asyncio.get_running_loop()
        self._payload = payload
        self._pending = True
        self._deadline = loop.time() + self.delay
        if self._task is None:
            self._task = loop.create_task(self._wake())

    def take(self) -> Any:
        """Remove and return the pending payload without firing."""
        payload = self._payload if self._pending else None
        self._clear()
        return payload

    def cancel(self):
        """Drop the pending payload. A callback already running is left alone."""
        self._clear()

    async def flush(self):
        """Fire immediately if something is pending."""
        if not self._pending:
            return
        payload = self.take()
        await self._fire(payload)

    def _clear(self):
        self._payload = None
        self._pending = False
        if self._task is not None:
            task, self._task = self._task, None
            task.cancel()

    async def _wake(self):
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        payload = self._payload
        self._payload = None
        self._pending = False
        # Detach before firing so cancel() cannot interrupt the callback
        self._task = None
        await self._fire(payload)

    async def _fire(self, payload: Any):
        try:
            result = self._callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Debounce callback {self.name or self._callback!r} failed: {e}")
