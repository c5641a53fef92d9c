"""Durable per-target analysis lock.

The lock is a row in the same SQLite database as the analyses, never an
in-process mutex, so a crash leaves visible residue that the recovery sweep
can find and clear.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from core.models import JobLockRecord
from core.ports import JobLockStorePort

LOGGER = logging.getLogger(__name__)


class JobLock:
    """At most one in-flight analysis per target, across restarts."""

    def __init__(self, store: JobLockStorePort, owner: Optional[str] = None) -> None:
        self._store = store
        # Identifies this process in the lock table for operators.
        self.owner = owner or uuid.uuid4().hex

    def try_acquire(self, target_id: int) -> bool:
        granted = self._store.try_acquire_job(target_id, self.owner)
        if not granted:
            LOGGER.info("Analysis lock for target %s is already held", target_id)
        return granted

    def release(self, target_id: int) -> None:
        self._store.release_job(target_id)

    def force_release(self, target_id: int) -> None:
        """Clear a lock left behind by a crashed process."""

        record = self._store.get_job(target_id)
        LOGGER.warning(
            "Force releasing analysis lock for target %s (owner=%s)",
            target_id,
            record.owner if record else None,
        )
        self._store.release_job(target_id)

    def is_held(self, target_id: int) -> bool:
        record = self._store.get_job(target_id)
        return bool(record and record.in_progress)

    def list_in_progress(self) -> List[JobLockRecord]:
        return self._store.list_in_progress_jobs()
