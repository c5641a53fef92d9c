"""Application entry point for the groupscope bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from art import tprint
from dotenv import load_dotenv
from telethon import events

import settings
from adapters.llm_client import OpenAITextGenerator
from adapters.notification_formatting import HtmlNotificationFormatter
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_mapper import build_incoming
from adapters.telegram_notifier import TelegramNotifier
from adapters.telegram_sessions import (
    TelethonDataSource,
    disconnect_sessions,
    discover_sessions,
    validate_session,
)
from adapters.web_preview import WebPreviewReader
from client import build_bot_client
from core.analysis_cache import AnalysisCache
from core.analysis_engine import AnalysisEngine
from core.config import (
    AnalysisConfig,
    DeliveryConfig,
    RateLimitConfig,
    RevealPolicy,
    SessionPoolConfig,
)
from core.delivery import DeliveryQueue
from core.errors import (
    AnalysisNotAvailable,
    InsufficientCredits,
    NoSessionAvailable,
    ResourceExhausted,
    RevealDenied,
    TargetNotFound,
    UpstreamUnavailable,
)
from core.job_lock import JobLock
from core.processor import MessageProcessor, TriggerStatus
from core.rate_limiter import RateLimiter
from core.recovery import RecoveryManager
from core.reveal import RevealService
from core.session_pool import SessionPool
from get_session import LOGIN_METHODS, create_session

NAME = "GROUPSCOPE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: List[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> List[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: List[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/groupscope.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Telethon is chatty at INFO.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def _analysis_config() -> AnalysisConfig:
    return AnalysisConfig(
        window_size=settings.WINDOW_SIZE,
        staleness_threshold=settings.STALENESS_THRESHOLD,
        min_authors=settings.MIN_AUTHORS,
        max_authors=settings.MAX_AUTHORS,
        min_author_messages=settings.MIN_AUTHOR_MESSAGES,
        min_author_share=settings.MIN_AUTHOR_SHARE,
        variants=settings.VARIANTS,
        llm_max_retries=settings.LLM_MAX_RETRIES,
        llm_base_delay_seconds=settings.LLM_BASE_DELAY,
        channel_fetch_limit=settings.CHANNEL_FETCH_LIMIT,
        channel_min_text_chars=settings.CHANNEL_MIN_TEXT_CHARS,
        auto_trigger=settings.AUTO_TRIGGER,
    )


def _rate_limiter() -> RateLimiter:
    budgets = {
        name: RateLimitConfig(
            max_calls=int(cfg["max_calls"]),
            period_seconds=float(cfg["period_seconds"]),
            max_wait_seconds=float(cfg["max_wait_seconds"]),
        )
        for name, cfg in settings.RATE_LIMITS.items()
    }
    return RateLimiter(budgets)


def _text_generator() -> OpenAITextGenerator:
    load_dotenv()
    api_key = os.getenv("LLM_API_KEY")
    if not api_key:
        raise RuntimeError("Missing LLM_API_KEY in environment")
    return OpenAITextGenerator(
        api_key=api_key,
        model=settings.LLM_MODEL,
        fallback_model=settings.LLM_FALLBACK_MODEL,
        base_url=settings.LLM_BASE_URL,
        timeout=settings.LLM_TIMEOUT,
        temperature=settings.LLM_TEMPERATURE,
    )


def _split_command(text: str) -> List[str]:
    parts = text.strip().split()
    if parts:
        # "/analyze@groupscope_bot" -> "/analyze"
        parts[0] = parts[0].split("@", 1)[0].lower()
    return parts


async def _serve() -> None:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    LOGGER.info("Database ready at %s", settings.DB_PATH)

    rate_limiter = _rate_limiter()
    analysis_config = _analysis_config()
    formatter = HtmlNotificationFormatter(cost_per_reveal=settings.REVEAL_COST)

    client, bot_token = build_bot_client()
    await client.start(bot_token=bot_token)
    me = await client.get_me()
    bot_username = getattr(me, "username", None)
    LOGGER.info("Bot connected as @%s", bot_username)

    # Channel access: user sessions first, the public web preview as fallback.
    handles = discover_sessions(settings.SESSIONS_DIR)
    session_pool: Optional[SessionPool] = None
    if handles:
        session_pool = SessionPool(
            handles,
            rate_limiter,
            SessionPoolConfig(
                sessions_dir=settings.SESSIONS_DIR,
                acquire_timeout_seconds=settings.SESSION_ACQUIRE_TIMEOUT,
                default_rate_limit_seconds=settings.SESSION_DEFAULT_RATE_LIMIT,
            ),
        )
        try:
            await session_pool.start(validate_session)
        except NoSessionAvailable as exc:
            LOGGER.warning("Channel sessions disabled: %s", exc)
            session_pool = None
    else:
        LOGGER.warning("No session files found; channel analysis relies on the web preview")

    preview = None
    if settings.WEB_PREVIEW_ENABLED:
        preview = WebPreviewReader(settings.WEB_PREVIEW_BASE_URL, timeout=settings.WEB_PREVIEW_TIMEOUT)

    job_lock = JobLock(storage)
    cache = AnalysisCache(storage, analysis_config.staleness_threshold)
    engine = AnalysisEngine(
        store=storage,
        cache=cache,
        job_lock=job_lock,
        session_pool=session_pool,
        data_source=TelethonDataSource(preview),
        text_generator=_text_generator(),
        rate_limiter=rate_limiter,
        config=analysis_config,
    )
    delivery = DeliveryQueue(
        storage,
        TelegramNotifier(client),
        DeliveryConfig(
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            base_delay_seconds=settings.DELIVERY_BASE_DELAY,
            max_delay_seconds=settings.DELIVERY_MAX_DELAY,
            poll_interval_seconds=settings.DELIVERY_POLL_INTERVAL,
            batch_size=settings.DELIVERY_BATCH_SIZE,
        ),
    )
    processor = MessageProcessor(storage, engine, delivery, formatter, analysis_config, rate_limiter)
    reveal = RevealService(
        storage,
        storage,
        storage,
        RevealPolicy(
            cost_per_reveal=settings.REVEAL_COST,
            repeat_views_free=settings.REVEAL_REPEAT_FREE,
            require_membership=settings.REVEAL_REQUIRE_MEMBERSHIP,
        ),
    )

    # Recovery runs before any handler is registered so no fresh trigger can
    # race the sweep for a lock row.
    await RecoveryManager(storage, job_lock, engine).recover_pending()

    dispatcher = asyncio.create_task(delivery.run(), name="delivery-dispatcher")

    @client.on(events.NewMessage(incoming=True, func=lambda e: e.is_group))
    async def group_handler(event) -> None:
        try:
            await event.get_chat()
            await event.get_sender()
            incoming = build_incoming(event.message, bot_username)
            if incoming is None:
                return
            await processor.on_message_ingested(incoming)
            if not incoming.mentions_bot:
                return

            result = processor.request_analysis(incoming.target_id)
            if result.status is TriggerStatus.READY:
                await event.reply(result.text, parse_mode="html")
            elif result.status is TriggerStatus.STARTED:
                await event.reply(formatter.analysis_started(), parse_mode="html")
            else:
                await event.reply(formatter.analysis_running(), parse_mode="html")
        except Exception:
            LOGGER.exception("Error while processing group message")

    @client.on(events.NewMessage(incoming=True, func=lambda e: e.is_private))
    async def private_handler(event) -> None:
        try:
            reply = await _handle_private(event.sender_id, event.raw_text or "")
        except Exception:
            LOGGER.exception("Error while processing private command")
            reply = "❌ Something went wrong. Please try again later."
        if reply:
            await event.respond(reply, parse_mode="html", link_preview=False)

    async def _handle_private(user_id: int, text: str) -> Optional[str]:
        parts = _split_command(text)
        if not parts or not parts[0].startswith("/"):
            return None
        command, args = parts[0], parts[1:]

        if command in {"/start", "/help"}:
            if storage.ensure_account(user_id, settings.WELCOME_CREDITS):
                LOGGER.info("New user %s granted %s welcome credits", user_id, settings.WELCOME_CREDITS)
            return formatter.help(storage.balance(user_id))

        if command == "/credits":
            return formatter.credits(storage.balance(user_id))

        if command == "/analyze":
            if len(args) != 1:
                return "Usage: <code>/analyze @channel</code>"
            try:
                result = await processor.request_channel_analysis(args[0], user_id)
            except TargetNotFound:
                return "❌ Channel not found or not public."
            except (UpstreamUnavailable, ResourceExhausted):
                return "❌ Channel access is busy right now. Please try again later."
            if result.status is TriggerStatus.READY:
                return result.text
            if result.status is TriggerStatus.RUNNING:
                return formatter.analysis_running()
            return formatter.analysis_started()

        if command == "/analyses":
            if len(args) != 1 or not args[0].lstrip("-").isdigit():
                return "Usage: <code>/analyses &lt;chat_id&gt;</code>"
            target = storage.get_target(int(args[0]))
            if target is None:
                return "❌ Unknown chat."
            return formatter.availability(target, processor.list_available_analyses(target.target_id))

        if command == "/reveal":
            if len(args) != 3 or not args[0].lstrip("-").isdigit() or not args[1].lstrip("-").isdigit():
                return "Usage: <code>/reveal &lt;chat_id&gt; &lt;author_id&gt; &lt;variant&gt;</code>"
            target = storage.get_target(int(args[0]))
            if target is None:
                return "❌ Unknown chat."
            try:
                result = reveal.reveal(user_id, target.target_id, int(args[1]), args[2].lower())
            except RevealDenied:
                return "❌ You can only view analyses of chats you take part in."
            except AnalysisNotAvailable:
                return "❌ This result is not available."
            except InsufficientCredits:
                return f"❌ Not enough credits. {formatter.credits(storage.balance(user_id))}"
            return formatter.reveal(target, result)

        return formatter.help(storage.balance(user_id))

    LOGGER.info("Listening for group messages and private commands...")
    try:
        await client.run_until_disconnected()
    finally:
        delivery.stop()
        await dispatcher
        await processor.wait_idle()
        if session_pool is not None:
            await disconnect_sessions(session_pool.handles)


def _run() -> None:
    _print_banner()
    _configure_logging()
    LOGGER.info("Starting groupscope")
    asyncio.run(_serve())


def _authorize(name: str, method: str) -> None:
    _print_banner()
    path = asyncio.run(create_session(settings.SESSIONS_DIR, name, method))
    print(f"Session saved to {path}")


def _list_sessions() -> None:
    async def _check() -> None:
        handles = discover_sessions(settings.SESSIONS_DIR)
        if not handles:
            print(f"No session files in {settings.SESSIONS_DIR}")
            return
        for handle in handles:
            try:
                ok = await validate_session(handle)
                status = "valid" if ok else "unauthorized"
            except Exception as exc:
                status = f"error ({type(exc).__name__})"
            print(f"{handle.identity} | {status}")
        await disconnect_sessions(handles)

    asyncio.run(_check())


def _export(target_id: int, output: Optional[str]) -> None:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    target = storage.get_target(target_id)
    if target is None:
        raise SystemExit(f"Unknown target {target_id}")

    lines = [f"# {target.title}", "", f"- id: {target.target_id}", f"- kind: {target.kind.value}", ""]
    for record in storage.recent_messages(target_id, settings.WINDOW_SIZE):
        author = f"@{record.author_username}" if record.author_username else (record.author_name or record.author_id)
        lines.append(f"**{author}** ({record.date.strftime('%Y-%m-%d %H:%M')}): {record.text}")
        lines.append("")

    path = output or os.path.join(settings.PROJECT_ROOT, f"export_{target_id}.md")
    with open(path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines))
    print(f"Exported {target.title} to {path}")


def _grant_credits(user_id: int, amount: int) -> None:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    balance = storage.add_credits(user_id, amount)
    print(f"User {user_id} now has {balance} credit(s)")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="groupscope")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bot")
    authorize_parser = subparsers.add_parser("authorize", help="Log in a user account for channel access")
    authorize_parser.add_argument("name", nargs="?", default="default", help="Session file name")
    authorize_parser.add_argument("--method", choices=LOGIN_METHODS, default="qr", help="Login flow")
    subparsers.add_parser("sessions", help="List session files and check their authorization")
    export_parser = subparsers.add_parser("export", help="Write the retained messages of a chat to Markdown")
    export_parser.add_argument("target_id", type=int)
    export_parser.add_argument("--output", "-o")
    credits_parser = subparsers.add_parser("credits", help="Grant credits to a user")
    credits_parser.add_argument("user_id", type=int)
    credits_parser.add_argument("amount", type=int)

    args = parser.parse_args(argv)
    if args.command == "authorize":
        _authorize(args.name, args.method)
        return
    if args.command == "sessions":
        _list_sessions()
        return
    if args.command == "export":
        _export(args.target_id, args.output)
        return
    if args.command == "credits":
        _grant_credits(args.user_id, args.amount)
        return
    _run()


if __name__ == "__main__":
    main()
