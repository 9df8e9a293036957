"""Shared fixtures: a recording chat adapter and retry waits disabled."""

from __future__ import annotations

import itertools
from unittest.mock import AsyncMock

import pytest
from tenacity import wait_none

from chatrelay.agent.http import _send_with_retry
from chatrelay.bridge.delivery import _edit_with_retry
from chatrelay.bridge.mux import AdapterMux
from chatrelay.events.state import BridgeState


class RecordingAdapter:
    """In-memory chat platform that remembers every send and edit."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.edits: list[tuple[str, str, str]] = []
        self.messages: dict[str, str] = {}
        self.fail_edits = 0
        self._ids = itertools.count(1)

    async def send_message(self, chat_id: str, text: str) -> str | None:
        message_id = f"m{next(self._ids)}"
        self.sent.append((chat_id, message_id, text))
        self.messages[message_id] = text
        return message_id

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        if self.fail_edits:
            self.fail_edits -= 1
            return False
        self.edits.append((chat_id, message_id, text))
        self.messages[message_id] = text
        return True

    @property
    def texts(self) -> list[str]:
        return [text for _, _, text in self.sent]


@pytest.fixture(autouse=True)
def _no_retry_wait():
    """Make tenacity retries immediate."""
    edit_wait = _edit_with_retry.retry.wait
    send_wait = _send_with_retry.retry.wait
    _edit_with_retry.retry.wait = wait_none()
    _send_with_retry.retry.wait = wait_none()
    yield
    _edit_with_retry.retry.wait = edit_wait
    _send_with_retry.retry.wait = send_wait


@pytest.fixture
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture
def mux(adapter: RecordingAdapter) -> AdapterMux:
    return AdapterMux({"tg": adapter})


@pytest.fixture
def state() -> BridgeState:
    # Zero flush interval so every update is delivered immediately.
    return BridgeState(flush_intervals={}, default_flush_interval=0.0)


@pytest.fixture
def api() -> AsyncMock:
    mock = AsyncMock()
    mock.create_session.return_value = "ses_new"
    mock.supports_global = False
    return mock
