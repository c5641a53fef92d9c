from __future__ import annotations

from adapters.sqlite_storage import SQLiteStorage
from core.job_lock import JobLock


def _lock(tmp_path, owner: str) -> JobLock:
    storage = SQLiteStorage(str(tmp_path / "groupscope.db"))
    storage.init_db()
    return JobLock(storage, owner=owner)


def test_second_owner_cannot_take_held_lock(tmp_path) -> None:
    first = _lock(tmp_path, "worker-a")
    second = _lock(tmp_path, "worker-b")

    assert first.try_acquire(-100) is True
    assert second.try_acquire(-100) is False
    assert second.is_held(-100) is True
    assert [record.owner for record in second.list_in_progress()] == ["worker-a"]

    first.release(-100)

    assert second.try_acquire(-100) is True


def test_force_release_clears_crashed_owner(tmp_path) -> None:
    crashed = _lock(tmp_path, "crashed")
    crashed.try_acquire(-100)

    restarted = _lock(tmp_path, "restarted")
    restarted.force_release(-100)

    assert restarted.is_held(-100) is False
    assert restarted.list_in_progress() == []
    # Releasing an unknown target is a no-op.
    restarted.force_release(-200)
    assert restarted.is_held(-200) is False
