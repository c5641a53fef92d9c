"""Analysis orchestration.

One job for one target runs in this order:
1) Take the durable per-target lock (or report AlreadyInProgress)
2) Refresh channel messages through the session pool when needed
3) Select the top-K active authors (insufficient data ends the job quietly)
4) Generate every requested variant through the rate-limited LLM
5) Persist all generated variants as one immutable analysis row
6) Notify completion listeners and release the lock on every exit path

A crash between 1) and 6) leaves the lock row behind; RecoveryManager
clears it on the next start-up.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from core.analysis_cache import AnalysisCache
from core.config import AnalysisConfig
from core.errors import (
    AlreadyInProgress,
    NoSessionAvailable,
    PersistenceFailure,
    SessionInvalid,
    SessionRateLimited,
    UpstreamUnavailable,
)
from core.job_lock import JobLock
from core.models import (
    Analysis,
    AnalyzedAuthor,
    IncomingMessage,
    MembershipRecord,
    MessageRecord,
    SessionOutcome,
    Target,
    TargetKind,
)
from core.ports import DataSourcePort, RawMessage, TargetStorePort, TextGeneratorPort
from core.prompts import build_prompt, parse_variant_response
from core.rate_limiter import LLM, RateLimiter
from core.session_pool import SessionPool

LOGGER = logging.getLogger(__name__)

CompletionListener = Callable[[Target, Analysis], Awaitable[None]]


def select_top_authors(candidates: Sequence[MembershipRecord], config: AnalysisConfig) -> List[MembershipRecord]:
    """Pick K authors from candidates ranked by activity.

    An author qualifies with at least ``min_author_messages`` messages and at
    least ``min_author_share`` of the leading author's count, so a long tail
    of one-line participants does not dilute the analysis. K is capped at
    ``max_authors``.
    """

    if not candidates:
        return []
    leader = candidates[0].message_count
    floor = max(config.min_author_messages, leader * config.min_author_share)
    qualifying = [candidate for candidate in candidates if candidate.message_count >= floor]
    return qualifying[: config.max_authors]


class AnalysisEngine:
    """Produce and persist analyses under the per-target job lock."""

    def __init__(
        self,
        store: TargetStorePort,
        cache: AnalysisCache,
        job_lock: JobLock,
        session_pool: Optional[SessionPool],
        data_source: Optional[DataSourcePort],
        text_generator: TextGeneratorPort,
        rate_limiter: RateLimiter,
        config: AnalysisConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._cache = cache
        self._job_lock = job_lock
        self._session_pool = session_pool
        self._data_source = data_source
        self._generator = text_generator
        self._rate_limiter = rate_limiter
        self._config = config
        self._sleep = sleep
        self._listeners: List[CompletionListener] = []

    @property
    def cache(self) -> AnalysisCache:
        return self._cache

    @property
    def job_lock(self) -> JobLock:
        return self._job_lock

    def add_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    async def run_analysis(self, target_id: int, variants: Optional[Iterable[str]] = None) -> Optional[Analysis]:
        """Run one analysis job and return the stored Analysis.

        Returns None for insufficient data. A channel whose refresh brought
        fewer than the staleness threshold of new posts gets its latest
        analysis back, announced again without new generation. Raises
        AlreadyInProgress when the lock is taken, UpstreamUnavailable when
        collaborators exhausted their retries and PersistenceFailure when the
        row could not be written.
        """

        if not self._job_lock.try_acquire(target_id):
            raise AlreadyInProgress(target_id, f"Analysis already running for target {target_id}")
        try:
            return await self._run_locked(target_id, tuple(variants or self._config.variants))
        finally:
            self._job_lock.release(target_id)

    async def _run_locked(self, target_id: int, variants: Sequence[str]) -> Optional[Analysis]:
        target = self._store.get_target(target_id)
        if target is None:
            LOGGER.info("Target %s is unknown; nothing to analyse", target_id)
            return None

        if target.kind is TargetKind.CHANNEL:
            # Channel posts only arrive through this refresh, so staleness is
            # decided here rather than by the caller.
            await self._refresh_channel(target)
            target = self._store.get_target(target_id) or target
            latest = self._store.latest_analysis(target_id)
            if latest is not None and not self._cache.is_stale(target_id):
                LOGGER.info("Channel %s has too few new posts; reusing analysis %s", target_id, latest.analysis_id)
                await self._emit(target, latest)
                return latest

        authors = self._analyzed_authors(target)
        required = 1 if target.kind is TargetKind.CHANNEL else self._config.min_authors
        if len(authors) < required:
            LOGGER.info(
                "Insufficient data for target %s: %s qualifying author(s), need %s",
                target_id,
                len(authors),
                required,
            )
            return None

        messages = self._store.recent_messages(target_id, self._config.window_size)
        message_count = self._store.message_count_at(target_id)
        LOGGER.info(
            "Starting analysis for target %s: %s messages, %s authors, variants=%s",
            target_id,
            len(messages),
            len(authors),
            ",".join(variants),
        )

        generated: Dict[str, Dict[int, str]] = {}
        for variant in variants:
            texts = await self._generate_variant(target, variant, authors, messages)
            if not texts:
                LOGGER.info("Variant %s is not applicable to target %s", variant, target_id)
                continue
            generated[variant] = texts

        if not generated:
            LOGGER.info("No variant produced text for target %s; nothing stored", target_id)
            return None

        analysis = Analysis(
            target_id=target_id,
            variants=generated,
            authors=tuple(authors),
            message_count=message_count,
            created_at=datetime.now(timezone.utc),
        )
        try:
            saved = self._store.save_analysis(analysis)
        except Exception as exc:
            LOGGER.exception("Failed to store analysis for target %s", target_id)
            raise PersistenceFailure(target_id, "Failed to store analysis") from exc

        LOGGER.info(
            "Analysis %s stored for target %s (%s variants)",
            saved.analysis_id,
            target_id,
            len(generated),
        )
        await self._emit(target, saved)
        return saved

    async def resolve_channel(self, reference: str) -> Target:
        """Resolve a channel username to a stored Target through a pooled session."""

        if self._session_pool is None or self._data_source is None:
            raise UpstreamUnavailable(0, "Channel access is not configured")
        session = await self._session_pool.acquire_session(f"resolve {reference}")
        try:
            target = await self._data_source.resolve_target(reference, session)
        except SessionRateLimited as exc:
            await self._session_pool.release(session, SessionOutcome.RATE_LIMITED, exc.retry_after)
            raise UpstreamUnavailable(0, f"Rate limited while resolving {reference}") from exc
        except SessionInvalid as exc:
            await self._session_pool.release(session, SessionOutcome.INVALID)
            raise UpstreamUnavailable(0, f"Session rejected while resolving {reference}") from exc
        except Exception:
            # TargetNotFound and transport errors say nothing about the session.
            await self._session_pool.release(session, SessionOutcome.OK)
            raise
        await self._session_pool.release(session, SessionOutcome.OK)

        existing = self._store.get_target(target.target_id)
        if existing is None:
            self._store.upsert_target(target)
            LOGGER.info("Registered channel %s (%s)", target.title, target.target_id)
            return target
        return existing

    def _analyzed_authors(self, target: Target) -> List[AnalyzedAuthor]:
        if target.kind is TargetKind.CHANNEL:
            # A channel has a single voice: the channel itself.
            stored = len(self._store.recent_messages(target.target_id, self._config.window_size))
            if not stored:
                return []
            return [
                AnalyzedAuthor(
                    author_id=target.target_id,
                    display_name=target.title,
                    username=target.username,
                    message_count=stored,
                )
            ]

        candidates = self._store.top_k_active(target.target_id, self._config.max_authors)
        return [
            AnalyzedAuthor(
                author_id=member.author_id,
                display_name=member.display_name,
                username=member.username,
                message_count=member.message_count,
            )
            for member in select_top_authors(candidates, self._config)
        ]

    async def _refresh_channel(self, target: Target) -> None:
        """Pull recent channel posts through pooled sessions, then the web preview."""

        if self._data_source is None:
            return

        no_session: Optional[NoSessionAvailable] = None
        if self._session_pool is not None:
            tries = max(1, self._session_pool.valid_count())
            for _ in range(tries):
                try:
                    session = await self._session_pool.acquire_session(f"fetch {target.target_id}")
                except NoSessionAvailable as exc:
                    no_session = exc
                    break
                try:
                    raw = await self._data_source.fetch_recent_messages(
                        target, session, self._config.channel_fetch_limit
                    )
                except SessionRateLimited as exc:
                    await self._session_pool.release(session, SessionOutcome.RATE_LIMITED, exc.retry_after)
                    continue
                except SessionInvalid:
                    await self._session_pool.release(session, SessionOutcome.INVALID)
                    continue
                except Exception as exc:
                    LOGGER.warning("Fetch for %s via %s failed: %s", target.target_id, session.identity, exc)
                    await self._session_pool.release(session, SessionOutcome.FAILED)
                    continue
                await self._session_pool.release(session, SessionOutcome.OK)
                self._store_channel_messages(target, raw)
                return

        try:
            preview = await self._data_source.fallback_fetch_public_preview(target)
        except Exception as exc:
            LOGGER.warning("Public preview fallback failed for %s: %s", target.target_id, exc)
            preview = None

        if preview is not None:
            if preview.title or preview.member_count is not None:
                # Stored posts upsert the target too, so they must carry the new metadata.
                target = Target(
                    target_id=target.target_id,
                    title=preview.title or target.title,
                    kind=target.kind,
                    member_count=preview.member_count if preview.member_count is not None else target.member_count,
                    message_count=target.message_count,
                    username=target.username,
                )
                self._store.upsert_target(target)
            if preview.messages:
                self._store_channel_messages(target, preview.messages)
                return

        if self._store.recent_messages(target.target_id, 1):
            LOGGER.warning("Using stored messages for %s; fresh fetch unavailable", target.target_id)
            return
        if no_session is not None:
            raise no_session
        raise UpstreamUnavailable(target.target_id, f"Could not fetch messages for target {target.target_id}")

    def _store_channel_messages(self, target: Target, raw_messages: Iterable[RawMessage]) -> None:
        stored = 0
        for raw in raw_messages:
            if len(raw.text) < self._config.channel_min_text_chars:
                continue
            inserted = self._store.record_message(
                IncomingMessage(
                    target_id=target.target_id,
                    target_title=target.title,
                    target_kind=target.kind,
                    author_id=raw.author_id,
                    author_name=raw.author_name,
                    author_username=raw.author_username,
                    author_is_bot=False,
                    message_id=raw.message_id,
                    date=raw.date,
                    text=raw.text,
                    member_count=target.member_count,
                    target_username=target.username,
                ),
                self._config.window_size,
            )
            if inserted:
                stored += 1
        LOGGER.info("Stored %s new channel messages for %s", stored, target.target_id)

    def _backoff(self, attempt: int) -> float:
        base = self._config.llm_base_delay_seconds * (2 ** attempt)
        return base + random.uniform(0, base / 4)

    async def _generate_variant(
        self,
        target: Target,
        variant: str,
        authors: Sequence[AnalyzedAuthor],
        messages: Sequence[MessageRecord],
    ) -> Dict[int, str]:
        prompt = build_prompt(variant, authors, messages)
        author_ids = [author.author_id for author in authors]
        max_retries = self._config.llm_max_retries
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            await self._rate_limiter.acquire(LLM)
            try:
                response = await self._generator.generate(prompt)
                return parse_variant_response(response, author_ids)
            except Exception as exc:
                # Any collaborator error (including unparseable output) is retryable.
                last_error = exc
                if attempt == max_retries:
                    break
                delay = self._backoff(attempt)
                LOGGER.warning(
                    "LLM call for %s/%s failed (attempt %s/%s): %s. Retrying in %.1fs",
                    target.target_id,
                    variant,
                    attempt + 1,
                    max_retries + 1,
                    exc,
                    delay,
                )
                await self._sleep(delay)

        LOGGER.error(
            "LLM call for %s/%s failed after %s attempts",
            target.target_id,
            variant,
            max_retries + 1,
        )
        raise UpstreamUnavailable(target.target_id, f"Text generation failed for {variant}") from last_error

    async def _emit(self, target: Target, analysis: Analysis) -> None:
        for listener in self._listeners:
            try:
                await listener(target, analysis)
            except Exception:
                LOGGER.exception("Completion listener failed for target %s", target.target_id)
