"""Credit-gated reveal of stored analysis texts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from core.config import RevealPolicy
from core.errors import AnalysisNotAvailable, InsufficientCredits, RevealDenied
from core.models import AccessRecord, Analysis, AnalyzedAuthor
from core.ports import AccessStorePort, CreditLedgerPort, TargetStorePort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevealResult:
    analysis: Analysis
    author: AnalyzedAuthor
    variant: str
    text: str
    credits_charged: int


class RevealService:
    """Hand out one (author, variant) text of the latest analysis.

    The requester must be a known member of the analysed target. A repeat
    view of a tuple the requester already paid for is free when the policy
    says so; every reveal, free or not, is recorded.
    """

    def __init__(
        self,
        store: TargetStorePort,
        access_store: AccessStorePort,
        ledger: CreditLedgerPort,
        policy: RevealPolicy,
    ) -> None:
        self._store = store
        self._access = access_store
        self._ledger = ledger
        self._policy = policy

    def reveal(self, requester_id: int, target_id: int, author_id: int, variant: str) -> RevealResult:
        if self._policy.require_membership and not self._store.is_member(target_id, requester_id):
            LOGGER.info("Reveal denied: %s is not a member of %s", requester_id, target_id)
            raise RevealDenied(f"User {requester_id} has no membership in target {target_id}")

        analysis = self._store.latest_analysis(target_id)
        if analysis is None or analysis.analysis_id is None:
            raise AnalysisNotAvailable(f"No analysis for target {target_id}")
        text = analysis.text_for(variant, author_id)
        if not text:
            raise AnalysisNotAvailable(f"No {variant} analysis for author {author_id} in target {target_id}")
        author = next(
            (a for a in analysis.authors if a.author_id == author_id),
            AnalyzedAuthor(author_id=author_id, display_name=None, username=None, message_count=0),
        )

        repeat = self._access.has_access(requester_id, analysis.analysis_id, author_id, variant)
        charge = 0 if repeat and self._policy.repeat_views_free else self._policy.cost_per_reveal
        if charge and not self._ledger.debit(requester_id, charge):
            raise InsufficientCredits(f"User {requester_id} cannot pay {charge} credit(s)")

        self._access.record_access(
            AccessRecord(
                requester_id=requester_id,
                analysis_id=analysis.analysis_id,
                author_id=author_id,
                variant=variant,
                credits_charged=charge,
                created_at=datetime.now(timezone.utc),
            )
        )
        LOGGER.info(
            "Reveal %s/%s/%s for %s (charged=%s)",
            analysis.analysis_id,
            author_id,
            variant,
            requester_id,
            charge,
        )
        return RevealResult(analysis=analysis, author=author, variant=variant, text=text, credits_charged=charge)
