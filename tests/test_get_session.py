from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

import get_session


class FakeUserClient:
    def __init__(self, authorized: bool) -> None:
        self.authorized = authorized
        self.events = []

    async def connect(self) -> None:
        self.events.append("connect")

    async def is_user_authorized(self) -> bool:
        return self.authorized

    async def get_me(self):
        return SimpleNamespace(first_name="Reader")

    async def disconnect(self) -> None:
        self.events.append("disconnect")


def test_already_authorized_session_skips_login(tmp_path, monkeypatch) -> None:
    client = FakeUserClient(authorized=True)
    opened = []

    def fake_builder(path):
        opened.append(path)
        return client

    monkeypatch.setattr(get_session, "build_session_client", fake_builder)

    path = asyncio.run(get_session.create_session(str(tmp_path / "sessions"), "reader", "phone"))

    assert path == str(tmp_path / "sessions" / "reader.session")
    assert opened == [path]
    assert (tmp_path / "sessions").is_dir()
    assert client.events == ["connect", "disconnect"]


def test_unknown_login_method_is_rejected(tmp_path) -> None:
    with pytest.raises(ValueError):
        asyncio.run(get_session.create_session(str(tmp_path), "reader", "sms"))
