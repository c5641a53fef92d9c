from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from core.models import AnalyzedAuthor, MessageRecord
from core.prompts import UnparseableResponse, build_prompt, parse_variant_response


def test_build_prompt_carries_authors_and_messages() -> None:
    authors = [AnalyzedAuthor(author_id=5, display_name="Ann", username=None, message_count=12)]
    messages = [
        MessageRecord(
            target_id=-100,
            author_id=5,
            author_name="Ann",
            text="Привет",
            message_id=1,
            date=datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc),
        )
    ]

    payload = json.loads(build_prompt("roast", authors, messages))

    assert payload["variant"] == "roast"
    assert payload["brief"].startswith("Roast")
    assert payload["authors"][0]["username"] == "unknown"
    assert payload["messages"][0]["text"] == "Привет"
    assert payload["messages"][0]["timestamp"] == "2024-01-01 12:30:00"


def test_parse_tolerates_prose_and_ignores_unrequested_authors() -> None:
    response = 'Sure! Here you go:\n```json\n{"user_5": " sharp ", "user_6": "x", "7": {"text": "nested"}}\n```'

    assert parse_variant_response(response, [5, 7]) == {5: "sharp", 7: "nested"}


def test_parse_drops_empty_texts_and_bad_keys() -> None:
    assert parse_variant_response('{"user_5": "", "user_x": "y"}', [5]) == {}


def test_parse_rejects_non_json() -> None:
    with pytest.raises(UnparseableResponse):
        parse_variant_response("I cannot help with that.", [5])
    with pytest.raises(UnparseableResponse):
        parse_variant_response("{broken", [5])
