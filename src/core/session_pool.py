"""Pool of authenticated data-access sessions.

Sessions are validated once at start-up and then rotated least-recently-used
among the eligible ones. A session that trips a platform rate limit is parked
until its deadline instead of being discarded; a session that fails
authorization stays in the pool as Invalid so operators can see it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from core.config import SessionPoolConfig
from core.errors import NoSessionAvailable
from core.models import Invalid, RateLimited, SessionHandle, SessionOutcome, Valid
from core.rate_limiter import DATA_API, RateLimiter

LOGGER = logging.getLogger(__name__)

Validator = Callable[[SessionHandle], Awaitable[bool]]


class SessionPool:
    """LRU rotation over sessions with cooperative, time-bounded waits."""

    def __init__(
        self,
        handles: Iterable[SessionHandle],
        rate_limiter: RateLimiter,
        config: SessionPoolConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handles: List[SessionHandle] = list(handles)
        self._rate_limiter = rate_limiter
        self._config = config
        self._clock = clock
        self._changed = asyncio.Condition()

    @property
    def handles(self) -> List[SessionHandle]:
        return list(self._handles)

    def valid_count(self) -> int:
        return sum(1 for handle in self._handles if not isinstance(handle.state, Invalid))

    async def start(self, validator: Validator) -> int:
        """Validate every session and return how many are usable.

        Validation failures are logged and the session is marked Invalid. The
        pool refuses to start when nothing validates.
        """

        for handle in self._handles:
            try:
                ok = await validator(handle)
            except Exception as exc:
                LOGGER.error("Session validation error for %s: %s", handle.identity, exc)
                ok = False
            if ok:
                handle.state = Valid()
                LOGGER.info("Session valid: %s", handle.identity)
            else:
                handle.state = Invalid("validation failed")
                LOGGER.warning("Session invalid/unauthorized: %s", handle.identity)

        valid = self.valid_count()
        if not valid:
            raise NoSessionAvailable(
                f"All {len(self._handles)} session(s) are invalid or unauthorized"
            )
        invalid = len(self._handles) - valid
        LOGGER.info("Session validation complete: %s valid, %s ignored", valid, invalid)
        return valid

    def _pick(self, now: float) -> Optional[SessionHandle]:
        eligible = [handle for handle in self._handles if handle.is_eligible(now)]
        if not eligible:
            return None
        return min(eligible, key=lambda handle: handle.last_used)

    def _next_deadline(self, now: float) -> Optional[float]:
        deadlines = [
            handle.state.until
            for handle in self._handles
            if isinstance(handle.state, RateLimited) and handle.state.until > now
        ]
        return min(deadlines) if deadlines else None

    async def acquire_session(self, purpose: str) -> SessionHandle:
        """Return the least-recently-used eligible session.

        Waits for a release or the earliest rate-limit deadline, bounded by
        ``acquire_timeout_seconds``, then raises NoSessionAvailable.
        """

        deadline = self._clock() + self._config.acquire_timeout_seconds
        async with self._changed:
            while True:
                now = self._clock()
                handle = self._pick(now)
                if handle is not None:
                    if isinstance(handle.state, RateLimited):
                        handle.state = Valid()
                    handle.last_used = now
                    break

                remaining = deadline - now
                if remaining <= 0:
                    raise NoSessionAvailable(f"No session available for {purpose}")
                wake_at = self._next_deadline(now)
                timeout = remaining if wake_at is None else min(remaining, wake_at - now)
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

        await self._rate_limiter.acquire(DATA_API)
        LOGGER.debug("Session %s acquired for %s", handle.identity, purpose)
        return handle

    async def release(
        self,
        handle: SessionHandle,
        outcome: SessionOutcome,
        retry_after: Optional[float] = None,
    ) -> None:
        """Record how a session fared and wake any waiters."""

        if outcome is SessionOutcome.RATE_LIMITED:
            seconds = retry_after if retry_after is not None else self._config.default_rate_limit_seconds
            handle.state = RateLimited(until=self._clock() + seconds)
            LOGGER.warning("Session %s rate limited for %.0fs", handle.identity, seconds)
        elif outcome is SessionOutcome.INVALID:
            handle.state = Invalid("rejected by platform")
            LOGGER.error("Session %s is no longer authorized; removed from rotation", handle.identity)

        async with self._changed:
            self._changed.notify_all()
