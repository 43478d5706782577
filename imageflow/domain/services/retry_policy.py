from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff.

    The delay before attempt n+1 is `base_delay * 2 ** (n - 1)` seconds, so the
    defaults wait 2s, 4s, ... between attempts.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        is_retryable: Callable[[Exception], bool] = lambda exc: True,
        label: str = "call",
    ) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d): %s", label, attempt, self.max_attempts, exc
                )
                if attempt >= self.max_attempts:
                    raise
            await self.sleep(self.delay_for(attempt))
            attempt += 1
