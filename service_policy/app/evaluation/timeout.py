"""
Deadline enforcement for policy evaluations.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from shared.logging import get_logger
from shared.metrics import MetricsCollector


T = TypeVar("T")


class TimeoutGuard:
    """Bounds the wall-clock time of an evaluation.

    When the deadline passes the evaluation is cancelled and the result of
    ``on_timeout`` is returned instead. There are no retries.
    """

    def __init__(self, timeout_seconds: float = 3.0, metrics: Optional[MetricsCollector] = None):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("policy.timeout")

    async def run(self, coro: Awaitable[T], on_timeout: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("Policy evaluation timed out", timeout_seconds=self.timeout_seconds)
            if self.metrics:
                self.metrics.increment_counter("policy_timeouts_total")
            return on_timeout()
