"""Interactive authorization of user sessions for channel access.

Each authorized account becomes one ``sessions/<name>.session`` file that the
session pool discovers at start-up.
"""

import asyncio
import logging
import os
from getpass import getpass

import qrcode
from dotenv import load_dotenv
from telethon import TelegramClient, errors

from client import build_session_client

load_dotenv()

LOGGER = logging.getLogger(__name__)

LOGIN_METHODS = ("qr", "phone")
QR_ATTEMPTS = 3
QR_TIMEOUT = 120


def _print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


async def _login_with_qr(client: TelegramClient) -> None:
    login = await client.qr_login()
    for attempt in range(1, QR_ATTEMPTS + 1):
        _print_qr(login.url)
        print(f"Scan with Telegram > Settings > Devices ({attempt}/{QR_ATTEMPTS})")
        try:
            await login.wait(timeout=QR_TIMEOUT)
            return
        except asyncio.TimeoutError:
            LOGGER.info("QR code expired")
            await login.recreate()
    raise RuntimeError("QR login was not confirmed in time")


async def _login_with_phone(client: TelegramClient) -> None:
    phone = os.getenv("SESSION_PHONE") or input("Phone number (international format): ").strip()
    await client.send_code_request(phone)
    await client.sign_in(phone=phone, code=input("Login code: ").strip())


async def create_session(sessions_dir: str, name: str, method: str = "qr") -> str:
    """Authorize a new account into ``sessions_dir/name.session``; return its path."""

    if method not in LOGIN_METHODS:
        raise ValueError(f"Unknown login method {method!r}, expected one of {LOGIN_METHODS}")

    os.makedirs(sessions_dir, exist_ok=True)
    path = os.path.join(sessions_dir, f"{name}.session")
    client = build_session_client(path)
    await client.connect()
    try:
        if await client.is_user_authorized():
            LOGGER.info("Session %s is already authorized", name)
        else:
            try:
                if method == "phone":
                    await _login_with_phone(client)
                else:
                    await _login_with_qr(client)
            except errors.SessionPasswordNeededError:
                password = os.getenv("SESSION_2FA_PASSWORD") or getpass("2FA password: ")
                await client.sign_in(password=password)
        me = await client.get_me()
        LOGGER.info("Session %s logged in as %s", name, me.first_name)
    finally:
        await client.disconnect()
    return path
