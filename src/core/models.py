"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class TargetKind(str, Enum):
    GROUP = "group"
    CHANNEL = "channel"


@dataclass(frozen=True)
class Target:
    """A group or channel under analysis."""

    target_id: int
    title: str
    kind: TargetKind
    member_count: Optional[int] = None
    # Total messages ever observed, not the retained window size.
    message_count: int = 0
    username: Optional[str] = None


@dataclass(frozen=True)
class IncomingMessage:
    """Minimal inbound message used by the ingestion path."""

    target_id: int
    target_title: str
    target_kind: TargetKind
    author_id: int
    author_name: Optional[str]
    author_username: Optional[str]
    author_is_bot: bool
    message_id: Optional[int]
    date: datetime
    text: str
    member_count: Optional[int] = None
    target_username: Optional[str] = None
    mentions_bot: bool = False


@dataclass(frozen=True)
class MessageRecord:
    """One stored message inside a target's sliding window."""

    target_id: int
    author_id: int
    author_name: Optional[str]
    text: str
    message_id: Optional[int]
    date: datetime
    author_username: Optional[str] = None


@dataclass(frozen=True)
class MembershipRecord:
    """Per (target, author) activity aggregate."""

    target_id: int
    author_id: int
    message_count: int
    last_activity: datetime
    display_name: Optional[str] = None
    username: Optional[str] = None

    def label(self) -> str:
        if self.username:
            return f"@{self.username}"
        if self.display_name:
            return self.display_name
        return f"User {self.author_id}"


@dataclass(frozen=True)
class AnalyzedAuthor:
    """Snapshot of an analysed author at analysis time."""

    author_id: int
    display_name: Optional[str]
    username: Optional[str]
    message_count: int

    def label(self) -> str:
        if self.username:
            return f"@{self.username}"
        if self.display_name:
            return self.display_name
        return f"User {self.author_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author_id": self.author_id,
            "display_name": self.display_name,
            "username": self.username,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyzedAuthor":
        return cls(
            author_id=int(data["author_id"]),
            display_name=data.get("display_name"),
            username=data.get("username"),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass(frozen=True)
class Analysis:
    """One immutable analysis snapshot.

    ``variants`` maps a variant name (professional, personal, roast, ...) to
    the generated text per analysed author id.
    """

    target_id: int
    variants: Dict[str, Dict[int, str]]
    authors: Tuple[AnalyzedAuthor, ...]
    message_count: int
    created_at: datetime
    analysis_id: Optional[int] = None

    @property
    def author_ids(self) -> List[int]:
        return [author.author_id for author in self.authors]

    def text_for(self, variant: str, author_id: int) -> Optional[str]:
        return self.variants.get(variant, {}).get(author_id)

    def availability(self) -> Dict[str, List[AnalyzedAuthor]]:
        """Return variant -> authors that have non-empty text."""

        available: Dict[str, List[AnalyzedAuthor]] = {}
        for variant, texts in self.variants.items():
            authors = [author for author in self.authors if texts.get(author.author_id)]
            if authors:
                available[variant] = authors
        return available


@dataclass(frozen=True)
class AccessRecord:
    """A requester revealed one (analysis, author, variant) text."""

    requester_id: int
    analysis_id: int
    author_id: int
    variant: str
    credits_charged: int
    created_at: datetime


# Session state is a closed set of tagged variants so transitions stay explicit.
@dataclass(frozen=True)
class Valid:
    pass


@dataclass(frozen=True)
class Invalid:
    reason: str


@dataclass(frozen=True)
class RateLimited:
    until: float


SessionState = Union[Valid, Invalid, RateLimited]


class SessionOutcome(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass(eq=False)
class SessionHandle:
    """One authenticated data-access credential tracked by the pool.

    ``client`` is whatever the data adapter needs (a Telethon client in
    production, a plain object in tests); the core never looks inside it.
    """

    identity: str
    client: Any = None
    state: SessionState = field(default_factory=Valid)
    last_used: float = 0.0

    def is_eligible(self, now: float) -> bool:
        state = self.state
        if isinstance(state, Valid):
            return True
        if isinstance(state, RateLimited):
            return state.until <= now
        return False


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class QueuedMessage:
    """A persisted outbound notification."""

    message_id: int
    recipient: int
    payload: str
    status: DeliveryStatus
    attempts: int
    next_attempt_at: float
    last_error: Optional[str] = None


@dataclass(frozen=True)
class JobLockRecord:
    """Durable per-target analysis lock row."""

    target_id: int
    in_progress: bool
    owner: Optional[str]
    acquired_at: Optional[datetime]
