"""
Reliability utilities for outbound provider calls.

Includes the Circuit Breaker pattern and the bounded call helper used by
handlers that talk to external services.
"""

import time
import asyncio
import logging
from typing import Callable, Any, Awaitable, Optional

from taskbox.app.core.exceptions import TransientTaskError

logger = logging.getLogger("taskbox.reliability")


class CircuitOpenError(TransientTaskError):
    """Raised instead of calling a provider whose circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit '{name}' is OPEN", details={"circuit": name})
        self.name = name


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' consecutive failures occur, the circuit opens and
    rejects calls for 'reset_timeout' seconds, then lets one call through
    (HALF_OPEN) to test the provider.
    """
    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 60):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        if self.state != "CLOSED" or self.failures:
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.monotonic()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning(
                    "Circuit opened",
                    extra={"circuit": self.name, "failures": self.failures},
                )
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


async def run_with_timeout(
    coro: Awaitable[Any],
    timeout_seconds: Optional[float],
) -> Any:
    """
    Await `coro` for at most `timeout_seconds`.

    Raises asyncio.TimeoutError when the budget is exceeded; the dispatcher
    treats that like any other failed attempt.
    """
    if timeout_seconds is None or timeout_seconds <= 0:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout_seconds)
