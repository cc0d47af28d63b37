# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry: at most ``max_attempts`` calls, waiting
    ``base_delay_sec * multiplier ** (n - 1)`` before retry ``n``.
    """

    max_attempts: int = 2
    base_delay_sec: float = 1.0
    multiplier: float = 2.0
    max_delay_sec: float = 10.0

    def delay_for(self, retry_number: int) -> float:
        n = max(1, int(retry_number))
        delay = float(self.base_delay_sec) * (float(self.multiplier) ** (n - 1))
        return max(0.0, min(delay, float(self.max_delay_sec)))

    def schedule(self) -> Tuple[float, ...]:
        return tuple(self.delay_for(n) for n in range(1, max(1, int(self.max_attempts))))

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        attempts = max(1, int(self.max_attempts))
        attempt = 1
        while True:
            try:
                return await fn()
            except retry_on as exc:
                if attempt >= attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.info("retrying after %s attempt=%d delay=%.2fs", type(exc).__name__, attempt, delay)
                await sleep(delay)
                attempt += 1


class RecoveryBudget:
    """
    Caps consecutive automatic stream recoveries. Any successful final result
    resets the budget.
    """

    def __init__(self, max_consecutive: int = 3) -> None:
        self.max_consecutive = max(0, int(max_consecutive))
        self.used = 0

    def try_acquire(self) -> bool:
        if self.used >= self.max_consecutive:
            return False
        self.used += 1
        return True

    def reset(self) -> None:
        self.used = 0
