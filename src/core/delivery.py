"""Persisted notification queue with retry and backoff.

Retry state (attempts, next eligible time, last error) lives on each queued
row, so the dispatcher keeps no memory of its own and resumes cleanly after
a restart. Each message is handled in isolation: a notification that keeps
failing never delays or blocks an unrelated one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from core.config import DeliveryConfig
from core.errors import PermanentDeliveryError
from core.models import QueuedMessage
from core.ports import DeliveryStorePort, NotifierPort

LOGGER = logging.getLogger(__name__)


def backoff_delay(attempts: int, config: DeliveryConfig) -> float:
    """Delay before the next try after ``attempts`` failed attempts."""

    delay = config.base_delay_seconds * (2 ** max(attempts - 1, 0))
    return min(delay, config.max_delay_seconds)


class DeliveryQueue:
    """Enqueue notifications and drain them from a long-lived task."""

    def __init__(
        self,
        store: DeliveryStorePort,
        notifier: NotifierPort,
        config: DeliveryConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._config = config
        self._clock = clock
        self._wakeup = asyncio.Event()
        self._stopped = False

    def enqueue(self, recipient: int, payload: str) -> int:
        message_id = self._store.enqueue_delivery(recipient, payload, self._clock())
        LOGGER.info("Queued notification %s for %s", message_id, recipient)
        self._wakeup.set()
        return message_id

    async def drain_once(self) -> int:
        """Attempt every due message once, oldest first; return how many."""

        due = self._store.due_deliveries(self._clock(), self._config.batch_size)
        for message in due:
            await self._attempt(message)
        return len(due)

    async def _attempt(self, message: QueuedMessage) -> None:
        attempts = message.attempts + 1
        try:
            await self._notifier.send(message.recipient, message.payload)
        except PermanentDeliveryError as exc:
            self._store.mark_delivery_failed(message.message_id, attempts, str(exc))
            LOGGER.error("Notification %s failed permanently: %s", message.message_id, exc)
            return
        except Exception as exc:
            if attempts >= self._config.max_attempts:
                self._store.mark_delivery_failed(message.message_id, attempts, str(exc))
                LOGGER.error(
                    "Notification %s failed after %s attempts: %s",
                    message.message_id,
                    attempts,
                    exc,
                )
                return
            delay = backoff_delay(attempts, self._config)
            self._store.mark_delivery_retry(message.message_id, attempts, self._clock() + delay, str(exc))
            LOGGER.warning(
                "Notification %s failed (attempt %s/%s), retrying in %.0fs: %s",
                message.message_id,
                attempts,
                self._config.max_attempts,
                delay,
                exc,
            )
            return

        self._store.mark_delivery_sent(message.message_id)
        LOGGER.info("Notification %s delivered to %s", message.message_id, message.recipient)

    def _idle_timeout(self) -> float:
        timeout = self._config.poll_interval_seconds
        next_at: Optional[float] = self._store.next_delivery_at()
        if next_at is not None:
            timeout = min(timeout, max(next_at - self._clock(), 0.0))
        return timeout

    async def run(self) -> None:
        """Dispatcher loop; returns after ``stop``."""

        LOGGER.info("Delivery dispatcher started")
        while not self._stopped:
            try:
                processed = await self.drain_once()
                timeout = 0.0 if processed else self._idle_timeout()
            except Exception:
                # The queue lives in the store; the next pass picks up where this one broke.
                LOGGER.exception("Delivery pass failed; retrying in %ss", self._config.poll_interval_seconds)
                processed = 0
                timeout = self._config.poll_interval_seconds
            if processed:
                continue
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Delivery dispatcher stopped")

    def stop(self) -> None:
        self._stopped = True
        self._wakeup.set()
