"""Start-up sweep for analysis jobs orphaned by a crash."""

from __future__ import annotations

import logging

from core.analysis_engine import AnalysisEngine
from core.errors import GroupscopeError
from core.job_lock import JobLock
from core.ports import TargetStorePort

LOGGER = logging.getLogger(__name__)


class RecoveryManager:
    """Clear stale lock rows and resubmit their targets exactly once.

    Must run before the process accepts new triggers, otherwise a fresh
    trigger could race the sweep for the same lock row.
    """

    def __init__(self, store: TargetStorePort, job_lock: JobLock, engine: AnalysisEngine) -> None:
        self._store = store
        self._job_lock = job_lock
        self._engine = engine

    async def recover_pending(self) -> int:
        """Return the number of targets resubmitted to the engine."""

        pending = self._job_lock.list_in_progress()
        if not pending:
            LOGGER.info("Recovery sweep: no interrupted analysis jobs")
            return 0

        resubmitted = 0
        for record in pending:
            latest = self._store.latest_analysis(record.target_id)
            finished = (
                latest is not None
                and record.acquired_at is not None
                and latest.created_at >= record.acquired_at
            )
            self._job_lock.force_release(record.target_id)
            if finished:
                # The job stored its analysis but died before releasing.
                LOGGER.info("Recovery: target %s already has a newer analysis", record.target_id)
                continue

            resubmitted += 1
            LOGGER.info("Recovery: resubmitting analysis for target %s", record.target_id)
            try:
                await self._engine.run_analysis(record.target_id)
            except GroupscopeError as exc:
                LOGGER.warning("Recovered analysis for target %s failed: %s", record.target_id, exc)
            except Exception:
                LOGGER.exception("Recovered analysis for target %s crashed", record.target_id)

        LOGGER.info(
            "Recovery sweep complete: interrupted=%s, resubmitted=%s",
            len(pending),
            resubmitted,
        )
        return resubmitted
