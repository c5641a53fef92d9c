"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

DEFAULT_VARIANTS: Tuple[str, ...] = ("professional", "personal", "roast")


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding-window budget for one resource class."""

    max_calls: int
    period_seconds: float
    # Waits longer than this surface as RateLimitExhausted instead of sleeping.
    max_wait_seconds: float


@dataclass(frozen=True)
class SessionPoolConfig:
    """Where session files live and how long callers may wait for one."""

    sessions_dir: str
    acquire_timeout_seconds: float = 60.0
    default_rate_limit_seconds: float = 300.0


@dataclass(frozen=True)
class AnalysisConfig:
    """Windowing, staleness and author selection settings."""

    window_size: int = 1000
    staleness_threshold: int = 50
    min_authors: int = 3
    max_authors: int = 10
    min_author_messages: int = 3
    min_author_share: float = 0.1
    variants: Tuple[str, ...] = DEFAULT_VARIANTS
    llm_max_retries: int = 3
    llm_base_delay_seconds: float = 1.0
    channel_fetch_limit: int = 200
    channel_min_text_chars: int = 32
    auto_trigger: bool = False


@dataclass(frozen=True)
class DeliveryConfig:
    """Retry policy for the persisted notification queue."""

    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    batch_size: int = 20


@dataclass(frozen=True)
class RevealPolicy:
    """Credit rules for revealing one analysis text."""

    cost_per_reveal: int = 1
    repeat_views_free: bool = True
    require_membership: bool = True
