"""Telethon user sessions as the channel data source.

Session files are discovered from the sessions directory, validated once
through the pool, and then used to resolve channels and read recent posts.
Telethon errors are translated into SessionRateLimited / SessionInvalid so
the pool can park or retire the session.
"""

from __future__ import annotations

import glob
import logging
import os
from typing import List, Optional

from telethon import errors, utils

from adapters.telegram_mapper import display_name, target_kind_from_chat
from adapters.web_preview import WebPreviewReader
from client import build_session_client
from core.errors import SessionInvalid, SessionRateLimited, TargetNotFound
from core.models import SessionHandle, Target
from core.ports import PublicPreview, RawMessage

LOGGER = logging.getLogger(__name__)

# The account behind the session is gone or logged out.
_INVALID_SESSION_ERRORS = (
    errors.AuthKeyUnregisteredError,
    errors.AuthKeyDuplicatedError,
    errors.SessionRevokedError,
    errors.SessionExpiredError,
    errors.UserDeactivatedError,
    errors.UserDeactivatedBanError,
)

_UNKNOWN_TARGET_ERRORS = (
    errors.UsernameNotOccupiedError,
    errors.UsernameInvalidError,
    errors.ChannelPrivateError,
    errors.ChannelInvalidError,
)


def discover_sessions(sessions_dir: str) -> List[SessionHandle]:
    """Build one SessionHandle per ``*.session`` file, sorted by name."""

    if not os.path.isdir(sessions_dir):
        LOGGER.warning("Sessions directory %s does not exist", sessions_dir)
        return []

    handles = []
    for path in sorted(glob.glob(os.path.join(sessions_dir, "*.session"))):
        identity = os.path.splitext(os.path.basename(path))[0]
        handles.append(SessionHandle(identity=identity, client=build_session_client(path)))
    LOGGER.info("Discovered %s session file(s) in %s", len(handles), sessions_dir)
    return handles


async def validate_session(handle: SessionHandle) -> bool:
    """Connect the session client and check it is still authorized."""

    client = handle.client
    if not client.is_connected():
        await client.connect()
    return await client.is_user_authorized()


async def disconnect_sessions(handles: List[SessionHandle]) -> None:
    for handle in handles:
        try:
            await handle.client.disconnect()
        except Exception as exc:
            LOGGER.warning("Failed to disconnect session %s: %s", handle.identity, exc)


def normalize_reference(reference: str) -> str:
    """Accept ``@name``, ``name``, ``t.me/name`` and ``https://t.me/s/name``."""

    value = reference.strip()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    for prefix in ("t.me/s/", "t.me/", "telegram.me/"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.lstrip("@").split("/", 1)[0].split("?", 1)[0]


class TelethonDataSource:
    """DataSourcePort on Telethon user sessions with a web preview fallback."""

    def __init__(self, preview_reader: Optional[WebPreviewReader] = None) -> None:
        self._preview = preview_reader

    async def resolve_target(self, reference: str, session: SessionHandle) -> Target:
        username = normalize_reference(reference)
        if not username:
            raise TargetNotFound(f"Empty channel reference: {reference!r}")
        try:
            entity = await session.client.get_entity(username)
        except _UNKNOWN_TARGET_ERRORS as exc:
            raise TargetNotFound(f"Channel {username} not found or private") from exc
        except ValueError as exc:
            # Telethon raises ValueError when no entity matches the username.
            raise TargetNotFound(f"Channel {username} not found") from exc
        except errors.FloodWaitError as exc:
            raise SessionRateLimited(retry_after=float(exc.seconds)) from exc
        except _INVALID_SESSION_ERRORS as exc:
            raise SessionInvalid(f"{session.identity}: {type(exc).__name__}") from exc

        return Target(
            target_id=utils.get_peer_id(entity),
            title=display_name(entity) or username,
            kind=target_kind_from_chat(entity),
            member_count=getattr(entity, "participants_count", None),
            username=getattr(entity, "username", None) or username,
        )

    async def fetch_recent_messages(self, target: Target, session: SessionHandle, limit: int) -> List[RawMessage]:
        """Read up to ``limit`` recent posts, oldest first, skipping forwards."""

        client = session.client
        messages: List[RawMessage] = []
        try:
            entity = await client.get_entity(target.username or target.target_id)
            async for message in client.iter_messages(entity, limit=limit):
                # Forwarded posts speak for another channel.
                if message.fwd_from is not None:
                    continue
                text = message.raw_text or ""
                if not text.strip():
                    continue
                messages.append(
                    RawMessage(
                        message_id=message.id,
                        author_id=target.target_id,
                        author_name=target.title,
                        text=text,
                        date=message.date,
                        author_username=target.username,
                    )
                )
        except errors.FloodWaitError as exc:
            raise SessionRateLimited(retry_after=float(exc.seconds)) from exc
        except _INVALID_SESSION_ERRORS as exc:
            raise SessionInvalid(f"{session.identity}: {type(exc).__name__}") from exc

        messages.reverse()
        LOGGER.info("Fetched %s posts from %s via %s", len(messages), target.target_id, session.identity)
        return messages

    async def fallback_fetch_public_preview(self, target: Target) -> Optional[PublicPreview]:
        if self._preview is None or not target.username:
            return None
        return await self._preview.fetch(target.username, target.target_id, target.title)
