"""Per-resource sliding-window rate limiter.

Each resource class (external data API, LLM, database write bursts) owns an
independent budget of ``max_calls`` per ``period_seconds``. ``acquire``
reserves the earliest free slot under a short lock and then sleeps outside
the lock for exactly the time until that slot, so concurrent callers queue
up in order without polling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Mapping, Optional

from core.config import RateLimitConfig
from core.errors import RateLimitExhausted

LOGGER = logging.getLogger(__name__)

DATA_API = "data_api"
LLM = "llm"
DB_WRITE = "db_write"


class _Budget:
    def __init__(self, config: RateLimitConfig) -> None:
        self.config = config
        # Start times of granted (or reserved future) slots, ascending.
        self.slots: Deque[float] = deque()
        self.exhausted_until: Optional[float] = None
        self.lock = asyncio.Lock()


class RateLimiter:
    """Process-wide limiter; build once at start-up and pass it around."""

    def __init__(
        self,
        budgets: Mapping[str, RateLimitConfig],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._budgets: Dict[str, _Budget] = {name: _Budget(cfg) for name, cfg in budgets.items()}
        self._clock = clock
        self._sleep = sleep

    def _budget(self, resource: str) -> _Budget:
        try:
            return self._budgets[resource]
        except KeyError:
            raise ValueError(f"Unknown rate limit resource: {resource}") from None

    async def acquire(self, resource: str) -> float:
        """Wait for a slot on ``resource`` and return the seconds waited.

        Raises RateLimitExhausted when the wait would exceed the budget's
        ``max_wait_seconds`` or the resource is marked exhausted for longer.
        """

        budget = self._budget(resource)
        cfg = budget.config
        async with budget.lock:
            now = self._clock()
            start = now
            if budget.exhausted_until is not None:
                if budget.exhausted_until > now:
                    start = budget.exhausted_until
                else:
                    budget.exhausted_until = None

            while budget.slots and budget.slots[0] <= now - cfg.period_seconds:
                budget.slots.popleft()

            if len(budget.slots) >= cfg.max_calls:
                # The slot max_calls positions back must leave the window first.
                start = max(start, budget.slots[-cfg.max_calls] + cfg.period_seconds)

            delay = start - now
            if delay > cfg.max_wait_seconds:
                raise RateLimitExhausted(resource, delay)
            budget.slots.append(start)

        if delay > 0:
            LOGGER.debug("Rate limiting %s: waiting %.2fs", resource, delay)
            await self._sleep(delay)
        return max(delay, 0.0)

    def mark_exhausted(self, resource: str, seconds: float) -> None:
        """Block ``resource`` for ``seconds`` (e.g. after a platform flood wait)."""

        budget = self._budget(resource)
        until = self._clock() + seconds
        if budget.exhausted_until is None or until > budget.exhausted_until:
            budget.exhausted_until = until
        LOGGER.warning("Resource %s marked exhausted for %.0fs", resource, seconds)

    def in_window(self, resource: str) -> int:
        """Return how many slots are currently counted against ``resource``."""

        budget = self._budget(resource)
        now = self._clock()
        return sum(1 for slot in budget.slots if slot > now - budget.config.period_seconds)
