"""Ports (interfaces) used by the core.

Ports define the minimal contracts for storage, data access, text generation,
credits and notification adapters so that the core can be reused with
different backends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from core.models import (
    AccessRecord,
    Analysis,
    IncomingMessage,
    JobLockRecord,
    MembershipRecord,
    MessageRecord,
    QueuedMessage,
    SessionHandle,
    Target,
)


class TargetStorePort(Protocol):
    """Messages, membership counters and analyses per target."""

    def upsert_target(self, target: Target) -> None:
        ...

    def get_target(self, target_id: int) -> Optional[Target]:
        ...

    def record_message(self, message: IncomingMessage, window_size: int) -> bool:
        ...

    def append_message(self, record: MessageRecord) -> None:
        ...

    def trim_to_window(self, target_id: int, window_size: int) -> int:
        ...

    def bump_membership(
        self,
        target_id: int,
        author_id: int,
        display_name: Optional[str],
        username: Optional[str] = None,
    ) -> None:
        ...

    def recent_messages(self, target_id: int, limit: int) -> List[MessageRecord]:
        ...

    def top_k_active(self, target_id: int, limit: int) -> List[MembershipRecord]:
        ...

    def is_member(self, target_id: int, author_id: int) -> bool:
        ...

    def latest_analysis(self, target_id: int) -> Optional[Analysis]:
        ...

    def save_analysis(self, analysis: Analysis) -> Analysis:
        ...

    def message_count_at(self, target_id: int) -> int:
        ...


class JobLockStorePort(Protocol):
    """Durable per-target analysis lock rows."""

    def try_acquire_job(self, target_id: int, owner: str) -> bool:
        ...

    def release_job(self, target_id: int) -> None:
        ...

    def get_job(self, target_id: int) -> Optional[JobLockRecord]:
        ...

    def list_in_progress_jobs(self) -> List[JobLockRecord]:
        ...


class AccessStorePort(Protocol):
    def has_access(self, requester_id: int, analysis_id: int, author_id: int, variant: str) -> bool:
        ...

    def record_access(self, record: AccessRecord) -> None:
        ...


class DeliveryStorePort(Protocol):
    """Persistence for the outbound notification queue."""

    def enqueue_delivery(self, recipient: int, payload: str, available_at: float) -> int:
        ...

    def due_deliveries(self, now: float, limit: int) -> List[QueuedMessage]:
        ...

    def next_delivery_at(self) -> Optional[float]:
        ...

    def mark_delivery_sent(self, message_id: int) -> None:
        ...

    def mark_delivery_retry(self, message_id: int, attempts: int, next_attempt_at: float, error: str) -> None:
        ...

    def mark_delivery_failed(self, message_id: int, attempts: int, error: str) -> None:
        ...

    def get_delivery(self, message_id: int) -> Optional[QueuedMessage]:
        ...


class CreditLedgerPort(Protocol):
    def balance(self, user_id: int) -> int:
        ...

    def debit(self, user_id: int, amount: int) -> bool:
        ...


@dataclass(frozen=True)
class RawMessage:
    """A message as returned by a data source, before storage."""

    message_id: Optional[int]
    author_id: int
    author_name: Optional[str]
    text: str
    date: datetime
    author_username: Optional[str] = None


@dataclass(frozen=True)
class PublicPreview:
    """Partial metadata scraped from a public web preview."""

    title: Optional[str] = None
    member_count: Optional[int] = None
    messages: Sequence[RawMessage] = field(default_factory=tuple)


class DataSourcePort(Protocol):
    """Messaging platform access through a pooled session."""

    async def resolve_target(self, reference: str, session: SessionHandle) -> Target:
        ...

    async def fetch_recent_messages(self, target: Target, session: SessionHandle, limit: int) -> List[RawMessage]:
        ...

    async def fallback_fetch_public_preview(self, target: Target) -> Optional[PublicPreview]:
        ...


class TextGeneratorPort(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


class NotifierPort(Protocol):
    """Notification transport used by the delivery queue."""

    async def send(self, recipient: int, payload: str) -> None:
        ...


class NotificationFormatterPort(Protocol):
    """Renders user-facing texts; the core never builds markup itself."""

    def analysis_ready(self, target: Target, analysis: Analysis) -> str:
        ...

    def insufficient_data(self, target: Target) -> str:
        ...

    def analysis_failed(self, target: Target) -> str:
        ...

    def analysis_running(self) -> str:
        ...
