"""Text generation on any OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import logging
from typing import Optional

from openai import AsyncOpenAI

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an observant analyst of chat conversations. "
    "You always answer with a single JSON object and nothing else."
)


class EmptyCompletion(RuntimeError):
    """The endpoint answered without any content."""


class OpenAITextGenerator:
    """TextGeneratorPort backed by AsyncOpenAI, with an optional fallback model.

    Retries and backoff belong to the analysis engine; this adapter makes at
    most one call per model for a single ``generate``.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        fallback_model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        temperature: float = 0.7,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self._model = model
        self._fallback_model = fallback_model
        self._temperature = temperature

    async def _complete(self, model: str, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
        )
        if response.choices and response.choices[0].message and response.choices[0].message.content:
            return response.choices[0].message.content.strip()
        raise EmptyCompletion(f"Empty completion from {model}")

    async def generate(self, prompt: str) -> str:
        try:
            return await self._complete(self._model, prompt)
        except Exception as exc:
            if not self._fallback_model:
                raise
            LOGGER.warning("Model %s failed: %s, trying fallback %s", self._model, exc, self._fallback_model)
            return await self._complete(self._fallback_model, prompt)
