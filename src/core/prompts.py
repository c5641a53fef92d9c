"""Prompt payloads and response parsing for analysis variants.

The wording is deliberately thin: the generator receives a JSON payload
with the variant brief, the selected authors and the recent messages, and is
asked to answer with a JSON object keyed by ``user_<author_id>``.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, Sequence

from core.models import AnalyzedAuthor, MessageRecord

LOGGER = logging.getLogger(__name__)

VARIANT_BRIEFS: Dict[str, str] = {
    "professional": (
        "Professional profile: expertise, communication clarity, leadership, "
        "collaboration and team fit, written as advice to a hiring manager."
    ),
    "personal": (
        "Personal profile: social role, emotional intelligence, humour, "
        "values and relationship patterns, for a non-professional reader."
    ),
    "roast": (
        "Roast: witty, sharp observations a close friend would make. Playful, "
        "not mean-spirited."
    ),
}

_INSTRUCTIONS = (
    "Write in the language of the messages. Analyse only the listed authors. "
    "Return only a JSON object whose keys are \"user_<author_id>\" and whose "
    "values are the analysis text (about 1500-2000 characters each). Omit an "
    "author, or return {}, when the messages give nothing to say for this "
    "variant."
)


class UnparseableResponse(ValueError):
    """The generator answered with something that is not the expected JSON."""


def build_prompt(
    variant: str,
    authors: Sequence[AnalyzedAuthor],
    messages: Iterable[MessageRecord],
) -> str:
    payload = {
        "variant": variant,
        "brief": VARIANT_BRIEFS.get(variant, variant),
        "instructions": _INSTRUCTIONS,
        "authors": [
            {
                "author_id": author.author_id,
                "username": author.username or "unknown",
                "first_name": author.display_name or "User",
                "message_count": author.message_count,
            }
            for author in authors
        ],
        "messages": [
            {
                "timestamp": record.date.strftime("%Y-%m-%d %H:%M:%S"),
                "author_id": record.author_id,
                "first_name": record.author_name or "User",
                "text": record.text,
            }
            for record in messages
        ],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def parse_variant_response(response: str, author_ids: Iterable[int]) -> Dict[int, str]:
    """Map author id -> text from a generator response.

    Extra prose around the JSON object is tolerated. Keys for authors that
    were not requested are ignored.
    """

    start = response.find("{")
    end = response.rfind("}")
    if start == -1 or end < start:
        raise UnparseableResponse("No JSON object found in response")
    try:
        parsed = json.loads(response[start : end + 1])
    except json.JSONDecodeError as exc:
        raise UnparseableResponse(f"Invalid JSON in response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise UnparseableResponse("Response JSON is not an object")

    wanted = set(author_ids)
    texts: Dict[int, str] = {}
    for key, value in parsed.items():
        raw_id = str(key)
        if raw_id.startswith("user_"):
            raw_id = raw_id[len("user_") :]
        try:
            author_id = int(raw_id)
        except ValueError:
            LOGGER.warning("Invalid author key in response: %s", key)
            continue
        if author_id not in wanted:
            continue
        if isinstance(value, dict):
            value = value.get("text")
        if isinstance(value, str) and value.strip():
            texts[author_id] = value.strip()
    return texts
