from __future__ import annotations

from datetime import datetime, timedelta, timezone

from adapters.sqlite_storage import SQLiteStorage
from core.models import AccessRecord, Analysis, AnalyzedAuthor, DeliveryStatus, IncomingMessage, MessageRecord, TargetKind

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _storage(tmp_path) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "groupscope.db"))
    storage.init_db()
    return storage


def _message(message_id, author_id=1, target_id=-100, minutes=None, text="hello there") -> IncomingMessage:
    return IncomingMessage(
        target_id=target_id,
        target_title="Test group",
        target_kind=TargetKind.GROUP,
        author_id=author_id,
        author_name=f"User {author_id}",
        author_username=None,
        author_is_bot=False,
        message_id=message_id,
        date=BASE + timedelta(minutes=message_id if minutes is None else minutes),
        text=text,
        member_count=42,
    )


def test_record_message_trims_to_window_and_keeps_newest(tmp_path) -> None:
    storage = _storage(tmp_path)

    for message_id in range(1, 1101):
        storage.record_message(_message(message_id, author_id=message_id % 4), window_size=1000)

    recent = storage.recent_messages(-100, 5000)
    assert storage.window_count(-100) == 1000
    assert len(recent) == 1000
    assert recent[0].message_id == 101
    assert recent[-1].message_id == 1100
    # The observed counter is not reduced by the trim.
    assert storage.message_count_at(-100) == 1100


def test_duplicate_message_is_ignored(tmp_path) -> None:
    storage = _storage(tmp_path)

    assert storage.record_message(_message(7), window_size=10) is True
    assert storage.record_message(_message(7), window_size=10) is False

    assert storage.message_count_at(-100) == 1
    assert storage.top_k_active(-100, 10)[0].message_count == 1


def test_target_metadata_is_upserted(tmp_path) -> None:
    storage = _storage(tmp_path)

    storage.record_message(_message(1), window_size=10)
    target = storage.get_target(-100)

    assert target is not None
    assert target.title == "Test group"
    assert target.kind is TargetKind.GROUP
    assert target.member_count == 42
    assert target.message_count == 1


def test_top_k_orders_by_count_then_recent_activity(tmp_path) -> None:
    storage = _storage(tmp_path)
    # author 1: 3 messages early, author 2: 3 messages later, author 3: 1 message.
    plan = [(1, 1), (2, 1), (3, 1), (4, 2), (5, 2), (6, 2), (7, 3)]
    for message_id, author_id in plan:
        storage.record_message(_message(message_id, author_id=author_id), window_size=100)

    ranked = storage.top_k_active(-100, 10)

    assert [member.author_id for member in ranked] == [2, 1, 3]
    assert ranked[0].message_count == 3
    assert storage.is_member(-100, 3)
    assert not storage.is_member(-100, 99)


def test_analysis_round_trip_and_latest(tmp_path) -> None:
    storage = _storage(tmp_path)
    authors = (AnalyzedAuthor(author_id=5, display_name="Ann", username="ann", message_count=12),)
    first = storage.save_analysis(
        Analysis(
            target_id=-100,
            variants={"roast": {5: "first"}},
            authors=authors,
            message_count=100,
            created_at=BASE,
        )
    )
    second = storage.save_analysis(
        Analysis(
            target_id=-100,
            variants={"roast": {5: "second"}, "personal": {5: "kind words"}},
            authors=authors,
            message_count=150,
            created_at=BASE + timedelta(hours=1),
        )
    )

    latest = storage.latest_analysis(-100)

    assert first.analysis_id is not None and second.analysis_id == latest.analysis_id
    assert latest.text_for("roast", 5) == "second"
    assert latest.text_for("personal", 5) == "kind words"
    assert latest.authors[0].username == "ann"
    assert latest.message_count == 150
    assert storage.latest_analysis(-200) is None


def test_job_lock_row_is_exclusive_until_released(tmp_path) -> None:
    storage = _storage(tmp_path)

    assert storage.try_acquire_job(-100, "worker-a") is True
    assert storage.try_acquire_job(-100, "worker-b") is False
    assert storage.try_acquire_job(-200, "worker-b") is True
    assert {job.target_id for job in storage.list_in_progress_jobs()} == {-100, -200}

    storage.release_job(-100)

    assert storage.get_job(-100).in_progress is False
    assert storage.try_acquire_job(-100, "worker-b") is True
    assert storage.get_job(-100).owner == "worker-b"


def test_access_records_and_credits(tmp_path) -> None:
    storage = _storage(tmp_path)

    assert storage.ensure_account(9, 2) is True
    assert storage.ensure_account(9, 2) is False
    assert storage.debit(9, 1) is True
    assert storage.debit(9, 5) is False
    assert storage.balance(9) == 1
    assert storage.add_credits(9, 4) == 5

    assert not storage.has_access(9, 1, 5, "roast")
    storage.record_access(
        AccessRecord(requester_id=9, analysis_id=1, author_id=5, variant="roast", credits_charged=1, created_at=BASE)
    )
    assert storage.has_access(9, 1, 5, "roast")
    assert not storage.has_access(9, 1, 5, "personal")


def test_outbox_due_order_and_state_changes(tmp_path) -> None:
    storage = _storage(tmp_path)

    first = storage.enqueue_delivery(1, "one", available_at=10.0)
    second = storage.enqueue_delivery(2, "two", available_at=10.0)
    later = storage.enqueue_delivery(3, "three", available_at=50.0)

    assert [item.message_id for item in storage.due_deliveries(20.0, 10)] == [first, second]
    assert storage.next_delivery_at() == 10.0

    storage.mark_delivery_sent(first)
    storage.mark_delivery_retry(second, 1, 70.0, "timeout")
    storage.mark_delivery_failed(later, 5, "blocked")

    assert storage.get_delivery(first).status is DeliveryStatus.SENT
    retried = storage.get_delivery(second)
    assert retried.status is DeliveryStatus.PENDING
    assert retried.attempts == 1
    assert retried.last_error == "timeout"
    assert storage.get_delivery(later).status is DeliveryStatus.FAILED
    assert storage.due_deliveries(60.0, 10) == []
    assert storage.next_delivery_at() == 70.0


def _record(message_id: int, minutes: int) -> MessageRecord:
    return MessageRecord(
        target_id=-100,
        author_id=1,
        author_name="User 1",
        text=f"message {message_id}",
        message_id=message_id,
        date=BASE + timedelta(minutes=minutes),
    )


def test_append_message_leaves_counters_alone(tmp_path) -> None:
    storage = _storage(tmp_path)

    storage.append_message(_record(1, 1))
    storage.append_message(_record(1, 1))

    assert storage.window_count(-100) == 1
    assert storage.message_count_at(-100) == 0
    assert storage.is_member(-100, 1) is False


def test_trim_to_window_keeps_newest_by_date(tmp_path) -> None:
    storage = _storage(tmp_path)
    # Inserted out of order: the window is chosen by message date, not arrival.
    for message_id, minutes in ((1, 30), (2, 10), (3, 50), (4, 20)):
        storage.append_message(_record(message_id, minutes))

    deleted = storage.trim_to_window(-100, 2)

    assert deleted == 2
    assert [record.message_id for record in storage.recent_messages(-100, 10)] == [1, 3]
    assert storage.trim_to_window(-100, 2) == 0


def test_bump_membership_counts_and_keeps_known_names(tmp_path) -> None:
    storage = _storage(tmp_path)

    storage.bump_membership(-100, 7, "Ann", "ann")
    storage.bump_membership(-100, 7, None)
    storage.bump_membership(-100, 8, "Bob")

    top = storage.top_k_active(-100, 10)
    assert [(member.author_id, member.message_count) for member in top] == [(7, 2), (8, 1)]
    assert top[0].display_name == "Ann"
    assert top[0].username == "ann"
    assert storage.is_member(-100, 8) is True
