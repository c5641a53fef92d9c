from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from adapters.sqlite_storage import SQLiteStorage
from core.analysis_cache import AnalysisCache
from core.analysis_engine import AnalysisEngine
from core.config import AnalysisConfig, DeliveryConfig, RateLimitConfig, SessionPoolConfig
from core.delivery import DeliveryQueue
from core.job_lock import JobLock
from core.models import IncomingMessage, SessionHandle, Target, TargetKind
from core.ports import RawMessage
from core.processor import MessageProcessor, TriggerStatus
from core.rate_limiter import DATA_API, DB_WRITE, LLM, RateLimiter
from core.session_pool import SessionPool
from fakes import EchoGenerator, FakeClock, FakeDataSource, FakeFormatter, FakeGenerator, FakeNotifier

GROUP_ID = -100
CHANNEL_ID = -1001
BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _Harness:
    def __init__(self, tmp_path, generator=None, config=None, limiter=None, pool=None, source=None) -> None:
        self.storage = SQLiteStorage(str(tmp_path / "groupscope.db"))
        self.storage.init_db()
        self.config = config or AnalysisConfig()
        limiter = limiter or RateLimiter(
            {
                LLM: RateLimitConfig(max_calls=1000, period_seconds=60.0, max_wait_seconds=1.0),
                DB_WRITE: RateLimitConfig(max_calls=10000, period_seconds=1.0, max_wait_seconds=1.0),
            }
        )
        self.engine = AnalysisEngine(
            store=self.storage,
            cache=AnalysisCache(self.storage, self.config.staleness_threshold),
            job_lock=JobLock(self.storage),
            session_pool=pool,
            data_source=source,
            text_generator=generator or EchoGenerator(),
            rate_limiter=limiter,
            config=self.config,
            sleep=FakeClock().sleep,
        )
        self.delivery = DeliveryQueue(self.storage, FakeNotifier(), DeliveryConfig())
        self.processor = MessageProcessor(
            self.storage, self.engine, self.delivery, FakeFormatter(), self.config, limiter
        )
        self.next_id = 1

    def message(self, author_id: int, text: str = "hi all", is_bot: bool = False, mention: bool = False):
        message_id = self.next_id
        self.next_id += 1
        return IncomingMessage(
            target_id=GROUP_ID,
            target_title="Test group",
            target_kind=TargetKind.GROUP,
            author_id=author_id,
            author_name=f"Member {author_id}",
            author_username=None,
            author_is_bot=is_bot,
            message_id=message_id,
            date=BASE + timedelta(seconds=message_id),
            text=text,
            mentions_bot=mention,
        )

    async def ingest(self, *authors: int) -> None:
        for author_id in authors:
            await self.processor.on_message_ingested(self.message(author_id))

    def queued(self):
        return [(item.recipient, item.payload) for item in self.storage.due_deliveries(10**12, 100)]


ACTIVE = [1] * 12 + [2] * 9 + [3] * 7


def test_bot_and_empty_messages_are_not_stored(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario() -> None:
        await harness.processor.on_message_ingested(harness.message(1, is_bot=True))
        await harness.processor.on_message_ingested(harness.message(1, text="   "))
        await harness.processor.on_message_ingested(harness.message(1))

    asyncio.run(scenario())

    assert harness.storage.window_count(GROUP_ID) == 1
    assert harness.storage.message_count_at(GROUP_ID) == 1


def test_mention_starts_job_then_serves_cached_result(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario():
        await harness.ingest(*ACTIVE)
        first = harness.processor.on_mention_detected(GROUP_ID)
        await harness.processor.wait_idle()
        second = harness.processor.on_mention_detected(GROUP_ID)
        return first, second

    first, second = asyncio.run(scenario())

    latest = harness.storage.latest_analysis(GROUP_ID)
    assert first is None
    assert second == f"ready:{GROUP_ID}:{latest.analysis_id}"
    assert harness.queued() == [(GROUP_ID, second)]


def test_private_requester_is_notified_with_the_group(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario():
        await harness.ingest(*ACTIVE)
        result = harness.processor.request_analysis(GROUP_ID, requester_chat_id=555)
        await harness.processor.wait_idle()
        return result

    result = asyncio.run(scenario())

    assert result.status is TriggerStatus.STARTED
    assert sorted(recipient for recipient, _ in harness.queued()) == [GROUP_ID, 555]


def test_request_while_lock_is_held_reports_running(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario():
        await harness.ingest(*ACTIVE)
        harness.storage.try_acquire_job(GROUP_ID, "another-process")
        return harness.processor.request_analysis(GROUP_ID)

    result = asyncio.run(scenario())

    assert result.status is TriggerStatus.RUNNING
    assert harness.storage.latest_analysis(GROUP_ID) is None


def test_insufficient_data_is_announced(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario() -> None:
        await harness.ingest(1, 1, 1, 2, 2, 2)
        harness.processor.request_analysis(GROUP_ID)
        await harness.processor.wait_idle()

    asyncio.run(scenario())

    assert harness.queued() == [(GROUP_ID, f"insufficient:{GROUP_ID}")]


def test_generation_failure_is_announced_without_collaborator_text(tmp_path) -> None:
    config = AnalysisConfig(variants=("roast",), llm_max_retries=0)
    harness = _Harness(tmp_path, generator=FakeGenerator(default=None), config=config)

    async def scenario() -> None:
        await harness.ingest(*ACTIVE)
        harness.processor.request_analysis(GROUP_ID)
        await harness.processor.wait_idle()

    asyncio.run(scenario())

    assert harness.queued() == [(GROUP_ID, f"failed:{GROUP_ID}")]
    assert harness.engine.job_lock.is_held(GROUP_ID) is False


def test_auto_trigger_refreshes_stale_analysis_quietly(tmp_path) -> None:
    config = AnalysisConfig(auto_trigger=True, staleness_threshold=5)
    harness = _Harness(tmp_path, config=config)

    async def scenario() -> None:
        # Too few authors at first: no announcement for background refreshes.
        await harness.ingest(1, 1, 1)
        await harness.processor.wait_idle()
        assert harness.queued() == []
        await harness.ingest(*ACTIVE)
        await harness.processor.wait_idle()

    asyncio.run(scenario())

    latest = harness.storage.latest_analysis(GROUP_ID)
    assert latest is not None
    assert latest.author_ids == [1, 2, 3]
    assert all(payload.startswith("ready:") for _, payload in harness.queued())


def test_list_available_analyses(tmp_path) -> None:
    harness = _Harness(tmp_path)
    assert harness.processor.list_available_analyses(GROUP_ID) == {}

    async def scenario() -> None:
        await harness.ingest(*ACTIVE)
        harness.processor.request_analysis(GROUP_ID)
        await harness.processor.wait_idle()

    asyncio.run(scenario())

    available = harness.processor.list_available_analyses(GROUP_ID)
    assert set(available) == {"professional", "personal", "roast"}
    assert [author.author_id for author in available["roast"]] == [1, 2, 3]


def test_exhausted_write_budget_drops_message(tmp_path) -> None:
    limiter = RateLimiter(
        {
            LLM: RateLimitConfig(max_calls=10, period_seconds=60.0, max_wait_seconds=1.0),
            DB_WRITE: RateLimitConfig(max_calls=1, period_seconds=60.0, max_wait_seconds=0.0),
        }
    )
    harness = _Harness(tmp_path, limiter=limiter)

    asyncio.run(harness.ingest(1, 2))

    assert harness.storage.message_count_at(GROUP_ID) == 1


def _channel_posts(count: int, start: int = 1):
    return [
        RawMessage(
            message_id=start + index,
            author_id=CHANNEL_ID,
            author_name="News",
            text=f"A long enough channel post about the weather, number {start + index}.",
            date=BASE + timedelta(minutes=start + index),
        )
        for index in range(count)
    ]


def _channel_harness(tmp_path, source: FakeDataSource, generator=None) -> _Harness:
    limiter = RateLimiter({DATA_API: RateLimitConfig(max_calls=1000, period_seconds=60.0, max_wait_seconds=1.0)})
    pool = SessionPool(
        [SessionHandle("reader")],
        limiter,
        SessionPoolConfig(sessions_dir="sessions", acquire_timeout_seconds=0.05),
    )
    harness = _Harness(
        tmp_path, generator=generator, config=AnalysisConfig(staleness_threshold=10), pool=pool, source=source
    )
    harness.storage.upsert_target(Target(target_id=CHANNEL_ID, title="News", kind=TargetKind.CHANNEL, username="news"))
    return harness


def test_channel_request_fetches_new_posts_before_serving(tmp_path) -> None:
    source = FakeDataSource(messages=_channel_posts(5))
    generator = EchoGenerator()
    harness = _channel_harness(tmp_path, source, generator)

    async def scenario():
        results = [harness.processor.request_analysis(CHANNEL_ID, requester_chat_id=555)]
        await harness.processor.wait_idle()
        first_id = harness.storage.latest_analysis(CHANNEL_ID).analysis_id
        source.messages = _channel_posts(5) + _channel_posts(200, start=100)
        results.append(harness.processor.request_analysis(CHANNEL_ID, requester_chat_id=555))
        await harness.processor.wait_idle()
        calls = generator.calls
        # Nothing new published: the stored analysis is announced again.
        results.append(harness.processor.request_analysis(CHANNEL_ID, requester_chat_id=555))
        await harness.processor.wait_idle()
        return results, first_id, calls

    results, first_id, calls = asyncio.run(scenario())

    second_id = harness.storage.latest_analysis(CHANNEL_ID).analysis_id
    assert [result.status for result in results] == [TriggerStatus.STARTED] * 3
    assert len(source.fetches) == 3
    assert second_id != first_id
    assert generator.calls == calls
    assert harness.queued() == [
        (555, f"ready:{CHANNEL_ID}:{first_id}"),
        (555, f"ready:{CHANNEL_ID}:{second_id}"),
        (555, f"ready:{CHANNEL_ID}:{second_id}"),
    ]


def test_requester_is_not_kept_waiting_on_a_foreign_lock(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario():
        await harness.ingest(*ACTIVE)
        harness.storage.try_acquire_job(GROUP_ID, "another-process")
        running = harness.processor.request_analysis(GROUP_ID, requester_chat_id=555)
        harness.storage.release_job(GROUP_ID)
        started = harness.processor.request_analysis(GROUP_ID)
        await harness.processor.wait_idle()
        return running, started

    running, started = asyncio.run(scenario())

    assert running.status is TriggerStatus.RUNNING
    assert started.status is TriggerStatus.STARTED
    assert [recipient for recipient, _ in harness.queued()] == [GROUP_ID]


def test_waiters_are_told_when_another_process_wins_the_lock(tmp_path) -> None:
    harness = _Harness(tmp_path)

    async def scenario():
        await harness.ingest(*ACTIVE)
        result = harness.processor.request_analysis(GROUP_ID, requester_chat_id=555)
        # The job task has not run yet; another process grabs the lock first.
        harness.storage.try_acquire_job(GROUP_ID, "another-process")
        await harness.processor.wait_idle()
        return result

    result = asyncio.run(scenario())

    assert result.status is TriggerStatus.STARTED
    assert harness.queued() == [(555, "running")]
    assert harness.storage.latest_analysis(GROUP_ID) is None
