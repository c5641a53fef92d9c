"""Core message processing and analysis triggers.

This module is integration-agnostic. It only relies on ports for storage,
formatting and delivery, enabling future frontends or adapters without
changes here. It is the boundary the chat layer talks to:

- ``on_message_ingested``: store one inbound message and update counters
- ``on_mention_detected``: return the "analysis ready" text, or start a job
- ``request_analysis``: explicit request from a private chat
- ``list_available_analyses``: variant/author availability for the reveal flow
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from core.analysis_engine import AnalysisEngine
from core.config import AnalysisConfig
from core.delivery import DeliveryQueue
from core.errors import (
    AlreadyInProgress,
    PersistenceFailure,
    RateLimitExhausted,
    ResourceExhausted,
    UpstreamUnavailable,
)
from core.models import Analysis, AnalyzedAuthor, IncomingMessage, Target, TargetKind
from core.ports import NotificationFormatterPort, TargetStorePort
from core.rate_limiter import DB_WRITE, RateLimiter

LOGGER = logging.getLogger(__name__)


class TriggerStatus(str, Enum):
    READY = "ready"
    STARTED = "started"
    RUNNING = "running"


@dataclass(frozen=True)
class TriggerResult:
    status: TriggerStatus
    text: Optional[str] = None


class MessageProcessor:
    """Orchestrates ingestion, staleness checks and background analysis jobs."""

    def __init__(
        self,
        store: TargetStorePort,
        engine: AnalysisEngine,
        delivery: DeliveryQueue,
        formatter: NotificationFormatterPort,
        config: AnalysisConfig,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._delivery = delivery
        self._formatter = formatter
        self._config = config
        self._rate_limiter = rate_limiter
        self._tasks: Set[asyncio.Task] = set()
        # Targets with a job scheduled or running in this process.
        self._pending: Set[int] = set()
        # Extra recipients (private chats) waiting for a running job per target.
        self._waiters: Dict[int, Set[int]] = {}
        engine.add_listener(self._on_analysis_completed)

    async def on_message_ingested(self, message: IncomingMessage) -> None:
        """Store one inbound message; bots and empty texts are ignored."""

        if message.author_is_bot:
            return

        # Media-only messages without captions carry nothing to analyse.
        if not message.text.strip():
            return

        if self._rate_limiter is not None:
            try:
                await self._rate_limiter.acquire(DB_WRITE)
            except RateLimitExhausted as exc:
                LOGGER.warning("Dropping message %s from %s: %s", message.message_id, message.target_id, exc)
                return

        self._store.record_message(message, self._config.window_size)

        if self._config.auto_trigger and not message.mentions_bot:
            target_id = message.target_id
            if self._engine.cache.is_stale(target_id) and not self._is_running(target_id):
                # Background refresh: only a finished analysis is announced.
                self._start_job(target_id, announce_failures=False)

    def on_mention_detected(self, target_id: int) -> Optional[str]:
        """Return the "analysis ready" text, or None while one is being produced."""

        return self.request_analysis(target_id).text

    def request_analysis(self, target_id: int, requester_chat_id: Optional[int] = None) -> TriggerResult:
        """Serve a fresh cached analysis or make sure a job is running.

        A requester that arrives while a job of this process is running is
        added to the waiters of that job instead of queuing a duplicate.
        Channels always go through a job: their new posts are only seen by
        the refresh inside it, which reuses the cached analysis when there
        are not enough of them.
        """

        target = self._store.get_target(target_id)
        is_channel = target is not None and target.kind is TargetKind.CHANNEL
        if not is_channel and not self._engine.cache.is_stale(target_id):
            latest = self._store.latest_analysis(target_id)
            if target is not None and latest is not None:
                return TriggerResult(TriggerStatus.READY, self._formatter.analysis_ready(target, latest))

        if target_id not in self._pending and self._engine.job_lock.is_held(target_id):
            # Held by another process; its completion never reaches this one.
            return TriggerResult(TriggerStatus.RUNNING)

        if requester_chat_id is not None:
            self._waiters.setdefault(target_id, set()).add(requester_chat_id)

        if target_id in self._pending:
            return TriggerResult(TriggerStatus.RUNNING)
        self._start_job(target_id)
        return TriggerResult(TriggerStatus.STARTED)

    async def request_channel_analysis(self, reference: str, requester_chat_id: int) -> TriggerResult:
        target = await self._engine.resolve_channel(reference)
        return self.request_analysis(target.target_id, requester_chat_id)

    def list_available_analyses(self, target_id: int) -> Dict[str, List[AnalyzedAuthor]]:
        latest = self._store.latest_analysis(target_id)
        if latest is None:
            return {}
        return latest.availability()

    def _is_running(self, target_id: int) -> bool:
        return target_id in self._pending or self._engine.job_lock.is_held(target_id)

    def _start_job(self, target_id: int, announce_failures: bool = True) -> None:
        self._pending.add(target_id)
        task = asyncio.create_task(self._run_job(target_id, announce_failures), name=f"analysis-{target_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._pending.discard(target_id))

    async def _run_job(self, target_id: int, announce_failures: bool = True) -> None:
        try:
            analysis = await self._engine.run_analysis(target_id)
        except AlreadyInProgress:
            # Another process took the lock first; its result is announced there.
            LOGGER.info("Analysis for %s is running elsewhere", target_id)
            waiters = self._waiters.pop(target_id, set())
            text = self._formatter.analysis_running()
            for recipient in sorted(waiters):
                self._delivery.enqueue(recipient, text)
            return
        except (UpstreamUnavailable, ResourceExhausted) as exc:
            LOGGER.warning("Analysis for %s deferred: %s", target_id, exc)
            self._notify_outcome(target_id, self._formatter.analysis_failed, announce_failures)
            return
        except PersistenceFailure:
            self._notify_outcome(target_id, self._formatter.analysis_failed, announce_failures)
            return
        except Exception:
            LOGGER.exception("Unexpected error while analysing %s", target_id)
            self._notify_outcome(target_id, self._formatter.analysis_failed, announce_failures)
            return

        if analysis is None:
            self._notify_outcome(target_id, self._formatter.insufficient_data, announce_failures)

    def _recipients(self, target: Target, include_group: bool = True) -> Set[int]:
        recipients = set(self._waiters.pop(target.target_id, set()))
        if include_group and target.kind is TargetKind.GROUP:
            recipients.add(target.target_id)
        return recipients

    def _notify_outcome(self, target_id: int, render: Callable[[Target], str], include_group: bool) -> None:
        target = self._store.get_target(target_id)
        if target is None:
            self._waiters.pop(target_id, None)
            return
        text = render(target)
        for recipient in sorted(self._recipients(target, include_group)):
            self._delivery.enqueue(recipient, text)

    async def _on_analysis_completed(self, target: Target, analysis: Analysis) -> None:
        text = self._formatter.analysis_ready(target, analysis)
        for recipient in sorted(self._recipients(target)):
            self._delivery.enqueue(recipient, text)

    async def wait_idle(self) -> None:
        """Wait for every background analysis started so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
