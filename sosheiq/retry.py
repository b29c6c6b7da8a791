"""Retry policy for external service calls.

A RetryPolicy is a plain value object. The orchestrator holds one and runs
every text and image call through it:

    text = await policy.run(lambda: llm("turn", prompt), label="turn")

Each attempt gets a bounded timeout. Failures are classified with
classify_error(); classified ServiceErrors are retried with a fixed backoff,
anything else propagates immediately. The sleep function is injectable so
tests can run the policy against a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from sosheiq.errors import classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-attempt, fixed-backoff retry with a per-attempt timeout.

    Args:
        max_attempts:    Total attempts including the first. Defaults to 3.
        backoff_seconds: Delay between attempts. Defaults to 1.0.
        timeout_seconds: Per-attempt timeout, or None for no bound.
        sleep:           Awaitable sleep; swap for a fake in tests.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    timeout_seconds: float | None = 60.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    async def run(self, call: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        """Run `call` until it succeeds or attempts run out.

        Raises the last classified ServiceError once attempts are exhausted.
        Unclassified exceptions are re-raised on the first occurrence.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.timeout_seconds is None:
                    return await call()
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classified = classify_error(e)
                if classified is None:
                    raise
                if classified is not e:
                    classified.__cause__ = e

            if attempt == self.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, self.max_attempts, classified)
                raise classified
            logger.warning(
                "%s failed (attempt %d/%d): %s, retrying in %.1fs",
                label, attempt, self.max_attempts, classified, self.backoff_seconds,
            )
            await self.sleep(self.backoff_seconds)
        raise ValueError("max_attempts must be at least 1")
