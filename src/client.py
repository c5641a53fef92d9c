"""Telegram client factories for groupscope.

We explicitly manage each client's lifecycle (connect/start/disconnect) so it
is obvious when a session is opened and when it ends. The bot client receives
group messages and private commands; user session clients are only used to
read channels the bot cannot see.
"""

from __future__ import annotations

import logging
import os
from typing import Tuple

from dotenv import load_dotenv
from telethon import TelegramClient

LOGGER = logging.getLogger(__name__)


def _api_credentials() -> Tuple[int, str]:
    """Read API_ID/API_HASH via python-dotenv to keep secrets out of the repo."""

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")
    return int(api_id), api_hash


def build_bot_client() -> Tuple[TelegramClient, str]:
    """Create the bot client and return it with its token.

    The session name defaults to "groupscope_bot" to create a local .session file.
    """

    api_id, api_hash = _api_credentials()
    bot_token = os.getenv("BOT_TOKEN")
    if not bot_token:
        raise RuntimeError("Missing BOT_TOKEN in environment")
    session_name = os.getenv("BOT_SESSION_NAME", "groupscope_bot")

    LOGGER.info("Initializing Telegram bot client")
    return TelegramClient(session_name, api_id, api_hash), bot_token


def build_session_client(session_path: str) -> TelegramClient:
    """Create a user client backed by an existing or new .session file."""

    api_id, api_hash = _api_credentials()
    # Telethon appends ".session" itself.
    if session_path.endswith(".session"):
        session_path = session_path[: -len(".session")]
    return TelegramClient(session_path, api_id, api_hash)
