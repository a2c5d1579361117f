"""
Per-user Telegram rate-limit handling.

Every outgoing Bot API call for a user goes through ``RateLimitGovernor.call``.
A 429 (``RetryAfter``) puts the user in a cooldown and the call is retried
exactly once after the cooldown; a second 429 propagates.
"""
import asyncio
import random
import time
from datetime import timedelta
from typing import Awaitable, Callable, Dict, TypeVar

from telegram.error import RetryAfter

from ..logging_config import get_logger

logger = get_logger("agentbridge.ratelimit")

T = TypeVar("T")

DEFAULT_RETRY_AFTER = 30.0


def retry_after_seconds(error: RetryAfter) -> float:
    value = getattr(error, "retry_after", None)
    if value is None:
        return DEFAULT_RETRY_AFTER
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def default_jitter() -> float:
    return random.uniform(1.0, 1.3)


class RateLimitGovernor:
    def __init__(self, sleep=asyncio.sleep, clock=time.monotonic, jitter: Callable[[], float] = default_jitter):
        self._sleep = sleep
        self._clock = clock
        self._jitter = jitter
        self._cooldowns: Dict[int, float] = {}

    def remaining(self, user_id: int) -> float:
        """Seconds left in the user's cooldown, 0 if none."""
        until = self._cooldowns.get(user_id)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def is_limited(self, user_id: int) -> bool:
        return self.remaining(user_id) > 0

    def _enter_cooldown(self, user_id: int, error: RetryAfter) -> float:
        wait = retry_after_seconds(error) * self._jitter()
        self._cooldowns[user_id] = self._clock() + wait
        return wait

    async def call(self, user_id: int, operation: Callable[[], Awaitable[T]]) -> T:
        remaining = self.remaining(user_id)
        if remaining > 0:
            logger.info(f"User {user_id} rate limited for {remaining:.1f}s, waiting...")
            await self._sleep(remaining)

        try:
            result = await operation()
        except RetryAfter as e:
            wait = self._enter_cooldown(user_id, e)
            logger.warning(f"Rate limited for user {user_id}, retrying in {wait:.1f}s")
            await self._sleep(wait)
            try:
                result = await operation()
            except RetryAfter as again:
                wait = self._enter_cooldown(user_id, again)
                logger.error(f"Rate limited again for user {user_id}, cooling down {wait:.1f}s")
                raise

        # Another call may have been limited while this one was in flight
        if self.remaining(user_id) == 0:
            self._cooldowns.pop(user_id, None)
        return result
