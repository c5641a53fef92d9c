from __future__ import annotations

import asyncio
import json
from typing import Dict, List, Optional, Tuple

from core.models import SessionHandle, Target
from core.ports import PublicPreview, RawMessage


class FakeClock:
    """Manually advanced clock whose sleep moves time forward instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGenerator:
    """Answers every prompt with the queued responses, then with ``default``."""

    def __init__(self, default: Optional[str] = None, responses: Optional[List[object]] = None) -> None:
        self.default = default
        self.responses = list(responses or [])
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.responses:
            item = self.responses.pop(0)
        else:
            item = self.default
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise RuntimeError("no response configured")
        return item


class FakeDataSource:
    def __init__(
        self,
        targets: Optional[Dict[str, Target]] = None,
        messages: Optional[List[RawMessage]] = None,
        preview: Optional[PublicPreview] = None,
        errors: Optional[List[Exception]] = None,
    ) -> None:
        self.targets = targets or {}
        self.messages = messages or []
        self.preview = preview
        self.errors = list(errors or [])
        self.fetches: List[Tuple[int, str]] = []
        self.preview_calls = 0

    async def resolve_target(self, reference: str, session: SessionHandle) -> Target:
        return self.targets[reference.lstrip("@")]

    async def fetch_recent_messages(self, target: Target, session: SessionHandle, limit: int) -> List[RawMessage]:
        self.fetches.append((target.target_id, session.identity))
        if self.errors:
            raise self.errors.pop(0)
        return self.messages[-limit:]

    async def fallback_fetch_public_preview(self, target: Target) -> Optional[PublicPreview]:
        self.preview_calls += 1
        return self.preview


class FakeNotifier:
    def __init__(self, failures: Optional[Dict[int, List[Exception]]] = None) -> None:
        # recipient -> errors raised on successive sends; the last one repeats forever
        self.failures = failures or {}
        self.sent: List[Tuple[int, str]] = []
        self.calls: List[int] = []

    async def send(self, recipient: int, payload: str) -> None:
        self.calls.append(recipient)
        queued = self.failures.get(recipient)
        if queued:
            raise queued.pop(0) if len(queued) > 1 else queued[0]
        self.sent.append((recipient, payload))


class FakeFormatter:
    def analysis_ready(self, target, analysis) -> str:
        return f"ready:{target.target_id}:{analysis.analysis_id}"

    def insufficient_data(self, target) -> str:
        return f"insufficient:{target.target_id}"

    def analysis_failed(self, target) -> str:
        return f"failed:{target.target_id}"

    def analysis_running(self) -> str:
        return "running"


class EchoGenerator:
    """Writes "<variant> for <id>" for every author listed in the prompt."""

    def __init__(self, skip_variants=(), gate: Optional[asyncio.Event] = None) -> None:
        self.skip_variants = set(skip_variants)
        self.gate = gate
        self.calls = 0

    async def generate(self, prompt: str) -> str:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        payload = json.loads(prompt)
        if payload["variant"] in self.skip_variants:
            return "{}"
        return json.dumps(
            {
                f"user_{author['author_id']}": f"{payload['variant']} for {author['author_id']}"
                for author in payload["authors"]
            }
        )
