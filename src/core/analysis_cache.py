"""Staleness decision over stored counters."""

from __future__ import annotations

from core.ports import TargetStorePort


class AnalysisCache:
    """Decide whether the latest analysis of a target must be regenerated.

    Staleness is measured in new messages, not wall-clock age: a dormant
    group never forces a recomputation. Only stored counters are read, so
    this is cheap enough to evaluate on every trigger.
    """

    def __init__(self, store: TargetStorePort, staleness_threshold: int) -> None:
        self._store = store
        self._threshold = staleness_threshold

    def is_stale(self, target_id: int) -> bool:
        latest = self._store.latest_analysis(target_id)
        if latest is None:
            return True
        delta = self._store.message_count_at(target_id) - latest.message_count
        return delta >= self._threshold
