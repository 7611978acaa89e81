"""Bounded exponential-backoff reconnection for the cloud engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from coach_engine.errors import EngineConnectionError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0


class ReconnectionController:
    """Re-run a connect coroutine up to ``max_attempts`` times.

    Attempt ``n`` waits ``base_delay * 2 ** (n - 1)`` seconds first, so the
    defaults give 2s, 4s, 8s. ``run`` never retries past the last attempt;
    it returns False and leaves the terminal decision to the owner.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connect = connect
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self.attempts = 0

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delay_for(self, attempt: int) -> float:
        return self._base_delay * 2 ** (attempt - 1)

    def schedule(self) -> list[float]:
        return [self.delay_for(n) for n in range(1, self._max_attempts + 1)]

    async def run(self) -> bool:
        self.attempts = 0
        while self.attempts < self._max_attempts:
            self.attempts += 1
            delay = self.delay_for(self.attempts)
            logger.warning(
                "Reconnecting to cloud engine (%d/%d) in %.1fs",
                self.attempts, self._max_attempts, delay,
            )
            await self._sleep(delay)
            try:
                await self._connect()
            except EngineConnectionError as e:
                logger.warning("Reconnect attempt %d failed: %s", self.attempts, e)
                continue
            logger.info("Cloud engine reconnected after %d attempt(s)", self.attempts)
            return True
        logger.error("Max reconnection attempts reached (%d)", self._max_attempts)
        return False
