"""Public channel preview reader (``https://t.me/s/<channel>``).

Used when no user session can read a channel. The preview only shows public
channels and only the latest posts, so the result is partial by nature.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from core.ports import PublicPreview, RawMessage

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/137.0.0.0 Safari/537.36"
)
MAX_ATTEMPTS = 3

_COUNTER_RE = re.compile(r"^([\d.,]+)\s*([KkMm]?)$")


def parse_counter(value: str) -> Optional[int]:
    """Turn "1 234", "12.3K" or "1.2M" into an integer."""

    cleaned = value.replace("\xa0", "").replace(" ", "").strip()
    match = _COUNTER_RE.match(cleaned)
    if not match:
        return None
    number, suffix = match.groups()
    multiplier = {"k": 1_000, "m": 1_000_000}.get(suffix.lower(), 1)
    if multiplier == 1:
        digits = number.replace(",", "").replace(".", "")
        return int(digits) if digits else None
    return int(round(float(number.replace(",", ".")) * multiplier))


def parse_preview_page(html: str, target_id: int, author_name: Optional[str]) -> Tuple[PublicPreview, Optional[int]]:
    """Parse one preview page; also return the smallest post id for paging."""

    soup = BeautifulSoup(html, "lxml")

    title_tag = soup.select_one("div.tgme_channel_info_header_title")
    title = title_tag.get_text(strip=True) if title_tag else None

    member_count = None
    for counter in soup.select("div.tgme_channel_info_counter"):
        kind = counter.select_one("span.counter_type")
        amount = counter.select_one("span.counter_value")
        if kind and amount and kind.get_text(strip=True) in {"subscribers", "members"}:
            member_count = parse_counter(amount.get_text(strip=True))
            break

    messages: List[RawMessage] = []
    oldest_id: Optional[int] = None
    for wrap in soup.select("div.tgme_widget_message_wrap"):
        post = wrap.select_one("div[data-post]")
        if post is None:
            continue
        try:
            post_id = int(str(post["data-post"]).rsplit("/", 1)[1])
        except (IndexError, ValueError):
            continue
        oldest_id = post_id if oldest_id is None else min(oldest_id, post_id)

        if wrap.select_one("div.tgme_widget_message_forwarded_from"):
            continue
        text_tag = wrap.select_one("div.tgme_widget_message_text")
        if text_tag is None:
            continue
        text = text_tag.get_text("\n", strip=True)
        if not text:
            continue

        time_tag = wrap.select_one("time[datetime]")
        date = datetime.now(timezone.utc)
        if time_tag is not None:
            try:
                date = datetime.fromisoformat(str(time_tag["datetime"]))
            except ValueError:
                pass

        messages.append(
            RawMessage(
                message_id=post_id,
                author_id=target_id,
                author_name=title or author_name,
                text=text,
                date=date,
            )
        )

    return PublicPreview(title=title, member_count=member_count, messages=tuple(messages)), oldest_id


class WebPreviewReader:
    """Scrape recent posts of a public channel with plain HTTP."""

    def __init__(self, base_url: str = "https://t.me/s/", timeout: float = 15.0, max_pages: int = 5) -> None:
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = timeout
        self._max_pages = max_pages

    async def _get(self, client: httpx.AsyncClient, url: str) -> str:
        attempt = 1
        while True:
            try:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
            except httpx.HTTPError as exc:
                LOGGER.warning("Preview request %s failed (attempt %s/%s): %s", url, attempt, MAX_ATTEMPTS, exc)
                if attempt >= MAX_ATTEMPTS:
                    raise
            await asyncio.sleep(attempt)
            attempt += 1

    async def fetch(self, username: str, target_id: int, title: Optional[str] = None) -> Optional[PublicPreview]:
        """Return title, subscriber count and posts (oldest first), or None if empty."""

        url = f"{self._base_url}{username}"
        headers = {"User-Agent": USER_AGENT, "Accept-Language": "en-US,en;q=0.9"}
        collected: List[RawMessage] = []
        preview_title = None
        member_count = None

        async with httpx.AsyncClient(follow_redirects=True, timeout=self._timeout, headers=headers) as client:
            page_url = url
            for _ in range(self._max_pages):
                html = await self._get(client, page_url)
                page, oldest_id = parse_preview_page(html, target_id, title)
                preview_title = preview_title or page.title
                if member_count is None:
                    member_count = page.member_count
                collected = list(page.messages) + collected
                if oldest_id is None or oldest_id <= 1:
                    break
                page_url = f"{url}?before={oldest_id}"

        LOGGER.info("Web preview for %s returned %s posts", username, len(collected))
        if preview_title is None and not collected:
            return None
        return PublicPreview(title=preview_title, member_count=member_count, messages=tuple(collected))
