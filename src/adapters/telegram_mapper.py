"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core processor.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from telethon.tl.custom import Message

from core.models import IncomingMessage, TargetKind


def target_kind_from_chat(chat) -> TargetKind:
    """Broadcast channels are channels; chats and megagroups are groups."""

    if getattr(chat, "broadcast", False):
        return TargetKind.CHANNEL
    return TargetKind.GROUP


def display_name(entity) -> Optional[str]:
    if entity is None:
        return None
    title = getattr(entity, "title", None)
    if title:
        return title
    parts = [getattr(entity, "first_name", None), getattr(entity, "last_name", None)]
    name = " ".join(part for part in parts if part)
    return name or None


def mentions_username(text: str, username: Optional[str]) -> bool:
    """True if ``@username`` appears in text as a whole word, case-insensitive."""

    if not username or not text:
        return False
    pattern = rf"(?<!\w)@{re.escape(username)}(?!\w)"
    return re.search(pattern, text, flags=re.IGNORECASE) is not None


def build_incoming(message: Message, bot_username: Optional[str] = None) -> Optional[IncomingMessage]:
    """Build a core IncomingMessage from a Telethon group Message.

    Returns None for messages without a resolvable sender (anonymous admins
    posting as the group, service messages).
    """

    chat = getattr(message, "chat", None)
    sender = getattr(message, "sender", None)
    sender_id = getattr(message, "sender_id", None)
    if chat is None or sender_id is None:
        return None

    text = message.raw_text or ""
    date = message.date or datetime.now(timezone.utc)

    return IncomingMessage(
        target_id=message.chat_id,
        target_title=display_name(chat) or str(message.chat_id),
        target_kind=target_kind_from_chat(chat),
        author_id=sender_id,
        author_name=display_name(sender),
        author_username=getattr(sender, "username", None),
        author_is_bot=bool(getattr(sender, "bot", False)),
        message_id=message.id,
        date=date,
        text=text,
        member_count=getattr(chat, "participants_count", None),
        target_username=getattr(chat, "username", None),
        mentions_bot=bool(getattr(message, "mentioned", False)) or mentions_username(text, bot_username),
    )
