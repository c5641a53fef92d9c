"""Static configuration for groupscope.

All user-editable settings (analysis windows, rate limits, delivery, reveal
pricing, LLM endpoint, logging) live in a single JSON file for quick edits
without touching Python. Secrets stay in the environment (.env).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.environ.get("GROUPSCOPE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# SQLite database holding targets, messages, analyses, locks and the outbox.
_database = _CONFIG.get("database", {})
DB_PATH = _project_path(_database.get("path", "groupscope.db"))

# User sessions (*.session files) used for channel data access.
_sessions = _CONFIG.get("sessions", {})
SESSIONS_DIR = _project_path(_sessions.get("dir", "sessions"))
SESSION_ACQUIRE_TIMEOUT = float(_sessions.get("acquire_timeout_seconds", 60))
SESSION_DEFAULT_RATE_LIMIT = float(_sessions.get("default_rate_limit_seconds", 300))

# Analysis windowing, staleness and author selection.
# - WINDOW_SIZE: messages retained per target
# - STALENESS_THRESHOLD: new messages after which an analysis is regenerated
_analysis = _CONFIG.get("analysis", {})
WINDOW_SIZE = int(_analysis.get("window_size", 1000))
STALENESS_THRESHOLD = int(_analysis.get("staleness_threshold", 50))
MIN_AUTHORS = int(_analysis.get("min_authors", 3))
MAX_AUTHORS = int(_analysis.get("max_authors", 10))
MIN_AUTHOR_MESSAGES = int(_analysis.get("min_author_messages", 3))
MIN_AUTHOR_SHARE = float(_analysis.get("min_author_share", 0.1))
VARIANTS = tuple(_analysis.get("variants", ["professional", "personal", "roast"]))
LLM_MAX_RETRIES = int(_analysis.get("llm_max_retries", 3))
LLM_BASE_DELAY = float(_analysis.get("llm_base_delay_seconds", 1.0))
CHANNEL_FETCH_LIMIT = int(_analysis.get("channel_fetch_limit", 200))
CHANNEL_MIN_TEXT_CHARS = int(_analysis.get("channel_min_text_chars", 32))
AUTO_TRIGGER = bool(_analysis.get("auto_trigger", False))

# Sliding-window budgets per resource class: {"max_calls", "period_seconds", "max_wait_seconds"}.
_default_rate_limits = {
    "data_api": {"max_calls": 20, "period_seconds": 60, "max_wait_seconds": 120},
    "llm": {"max_calls": 10, "period_seconds": 60, "max_wait_seconds": 300},
    "db_write": {"max_calls": 200, "period_seconds": 1, "max_wait_seconds": 5},
}
RATE_LIMITS = {**_default_rate_limits, **_CONFIG.get("rate_limits", {})}

# Retry policy for queued notifications.
_delivery = _CONFIG.get("delivery", {})
DELIVERY_MAX_ATTEMPTS = int(_delivery.get("max_attempts", 5))
DELIVERY_BASE_DELAY = float(_delivery.get("base_delay_seconds", 2))
DELIVERY_MAX_DELAY = float(_delivery.get("max_delay_seconds", 300))
DELIVERY_POLL_INTERVAL = float(_delivery.get("poll_interval_seconds", 1))
DELIVERY_BATCH_SIZE = int(_delivery.get("batch_size", 20))

# Reveal pricing.
_reveal = _CONFIG.get("reveal", {})
REVEAL_COST = int(_reveal.get("cost_per_reveal", 1))
REVEAL_REPEAT_FREE = bool(_reveal.get("repeat_views_free", True))
REVEAL_REQUIRE_MEMBERSHIP = bool(_reveal.get("require_membership", True))
# Credits granted to a user the first time they talk to the bot.
WELCOME_CREDITS = int(_reveal.get("welcome_credits", 0))

# OpenAI-compatible endpoint; the API key comes from LLM_API_KEY.
_llm = _CONFIG.get("llm", {})
LLM_BASE_URL = _llm.get("base_url")
LLM_MODEL = _llm.get("model", "gpt-4o-mini")
LLM_FALLBACK_MODEL = _llm.get("fallback_model")
LLM_TIMEOUT = float(_llm.get("timeout_seconds", 120))
LLM_TEMPERATURE = float(_llm.get("temperature", 0.7))

# Public t.me/s/<channel> preview used when no session can read a channel.
_web_preview = _CONFIG.get("web_preview", {})
WEB_PREVIEW_ENABLED = bool(_web_preview.get("enabled", True))
WEB_PREVIEW_BASE_URL = _web_preview.get("base_url", "https://t.me/s/")
WEB_PREVIEW_TIMEOUT = float(_web_preview.get("timeout_seconds", 15))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
