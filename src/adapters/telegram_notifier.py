"""Telegram notification adapter.

Sends queued notifications through the bot client and translates Telethon
errors into the delivery error taxonomy.
"""

from __future__ import annotations

from telethon import errors

from core.errors import DeliveryError, PermanentDeliveryError

# The recipient can never be reached again; retrying is pointless.
_PERMANENT_ERRORS = (
    errors.UserIsBlockedError,
    errors.ChatWriteForbiddenError,
    errors.PeerIdInvalidError,
    errors.InputUserDeactivatedError,
    errors.ChannelPrivateError,
)


class TelegramNotifier:
    """Notifier adapter that sends HTML messages with the bot client."""

    def __init__(self, client) -> None:
        self._client = client

    async def send(self, recipient: int, payload: str) -> None:
        try:
            await self._client.send_message(recipient, payload, parse_mode="html", link_preview=False)
        except _PERMANENT_ERRORS as exc:
            raise PermanentDeliveryError(f"{type(exc).__name__}: {exc}") from exc
        except errors.FloodWaitError as exc:
            raise DeliveryError(f"Flood wait of {exc.seconds}s") from exc
        except errors.RPCError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
