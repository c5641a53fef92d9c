from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from adapters.llm_client import EmptyCompletion, OpenAITextGenerator


class FakeCompletions:
    def __init__(self, answers) -> None:
        self._answers = dict(answers)
        self.models = []

    async def create(self, model, messages, temperature):
        self.models.append(model)
        answer = self._answers[model]
        if isinstance(answer, Exception):
            raise answer
        message = SimpleNamespace(content=answer)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _generator(answers, fallback=None):
    completions = FakeCompletions(answers)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAITextGenerator(api_key="key", model="main", fallback_model=fallback, client=client), completions


def test_primary_model_answer_is_stripped() -> None:
    generator, completions = _generator({"main": '  {"user_1": "hi"}\n'})

    assert asyncio.run(generator.generate("prompt")) == '{"user_1": "hi"}'
    assert completions.models == ["main"]


def test_fallback_model_used_after_failure() -> None:
    generator, completions = _generator({"main": RuntimeError("overloaded"), "backup": "{}"}, fallback="backup")

    assert asyncio.run(generator.generate("prompt")) == "{}"
    assert completions.models == ["main", "backup"]


def test_empty_completion_without_fallback_raises() -> None:
    generator, _ = _generator({"main": ""})

    with pytest.raises(EmptyCompletion):
        asyncio.run(generator.generate("prompt"))
