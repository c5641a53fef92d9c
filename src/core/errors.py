"""Exception taxonomy shared by the core and its adapters."""

from __future__ import annotations

from typing import Optional


class GroupscopeError(Exception):
    """Base class for every error raised on purpose by groupscope."""


class AnalysisError(GroupscopeError):
    """Failure of one analysis job for one target."""

    def __init__(self, target_id: int, message: str) -> None:
        super().__init__(message)
        self.target_id = target_id


class InsufficientData(AnalysisError):
    """Too few active authors; a defined empty outcome, never retried."""


class AlreadyInProgress(AnalysisError):
    """Another job holds the durable lock for this target."""


class UpstreamUnavailable(AnalysisError):
    """Data access or text generation exhausted its retries."""


class PersistenceFailure(AnalysisError):
    """The analysis row could not be written."""


class ResourceExhausted(GroupscopeError):
    """A bounded wait for a shared resource gave up."""


class RateLimitExhausted(ResourceExhausted):
    def __init__(self, resource: str, wait_seconds: float) -> None:
        super().__init__(f"Rate limit for {resource} exhausted (would wait {wait_seconds:.1f}s)")
        self.resource = resource
        self.wait_seconds = wait_seconds


class NoSessionAvailable(ResourceExhausted):
    """No valid, non rate-limited session could be handed out in time."""


class SessionRateLimited(GroupscopeError):
    """Raised by data adapters when the platform throttles a session."""

    def __init__(self, retry_after: Optional[float] = None) -> None:
        super().__init__(f"Session rate limited (retry after {retry_after}s)")
        self.retry_after = retry_after


class SessionInvalid(GroupscopeError):
    """Raised by data adapters when a session is no longer authorized."""


class DeliveryError(GroupscopeError):
    """Transient notification delivery failure."""


class PermanentDeliveryError(DeliveryError):
    """Delivery can never succeed (blocked bot, deleted chat, ...)."""


class RevealError(GroupscopeError):
    """The reveal flow refused to hand out a text."""


class RevealDenied(RevealError):
    """Requester shares no membership with the analysed target."""


class AnalysisNotAvailable(RevealError):
    """No analysis text exists for the requested author and variant."""


class InsufficientCredits(RevealError):
    """The credit ledger refused the debit."""


class TargetNotFound(GroupscopeError):
    """A channel reference does not resolve to a readable chat."""
