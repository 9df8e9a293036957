"""Tests for chatrelay.bridge.delivery and chatrelay.bridge.mux."""

from __future__ import annotations

from unittest.mock import AsyncMock

from chatrelay.bridge.buffer import BufferStatus, MessageBuffer
from chatrelay.bridge.delivery import deliver, flush_all, flush_message, safe_edit_with_retry, send_notice
from chatrelay.bridge.display import build_display_content
from chatrelay.bridge.mux import AdapterMux, BridgeAdapter
from chatrelay.events.state import SessionRoute


# ---------------------------------------------------------------------------
# deliver
# ---------------------------------------------------------------------------


class TestDeliver:
    async def test_first_delivery_sends(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1", text="hi")
        assert await deliver(adapter, "c1", buf, "hello")
        assert buf.platform_msg_id == "m1"
        assert adapter.texts == ["hello"]

    async def test_same_content_skipped(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1")
        await deliver(adapter, "c1", buf, "hello")
        assert not await deliver(adapter, "c1", buf, "hello")
        assert len(adapter.sent) == 1
        assert adapter.edits == []

    async def test_changed_content_edits(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1")
        await deliver(adapter, "c1", buf, "hello")
        assert await deliver(adapter, "c1", buf, "hello world")
        assert adapter.edits == [("c1", "m1", "hello world")]

    async def test_send_without_id_leaves_buffer(self) -> None:
        adapter = AsyncMock()
        adapter.send_message.return_value = None
        buf = MessageBuffer(message_id="a1")
        assert not await deliver(adapter, "c1", buf, "hello")
        assert buf.platform_msg_id is None
        assert buf.last_display_hash == ""

    async def test_send_exception_is_contained(self) -> None:
        adapter = AsyncMock()
        adapter.send_message.side_effect = ConnectionError("down")
        buf = MessageBuffer(message_id="a1")
        assert not await deliver(adapter, "c1", buf, "hello")

    async def test_failed_edit_keeps_old_hash(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1")
        await deliver(adapter, "c1", buf, "v1")
        old_hash = buf.last_display_hash
        adapter.fail_edits = 3
        assert not await deliver(adapter, "c1", buf, "v2")
        assert buf.last_display_hash == old_hash
        assert buf.platform_msg_id == "m1"


class TestSafeEdit:
    async def test_retries_then_succeeds(self, adapter) -> None:
        adapter.fail_edits = 2
        assert await safe_edit_with_retry(adapter, "c1", "m9", "text") == "m9"
        assert adapter.edits == [("c1", "m9", "text")]

    async def test_gives_up_after_three_attempts(self) -> None:
        adapter = AsyncMock()
        adapter.edit_message.side_effect = TimeoutError()
        assert await safe_edit_with_retry(adapter, "c1", "m9", "text") is None
        assert adapter.edit_message.await_count == 3

    async def test_non_transient_error_not_retried(self) -> None:
        adapter = AsyncMock()
        adapter.edit_message.side_effect = ValueError("bad markup")
        assert await safe_edit_with_retry(adapter, "c1", "m9", "text") is None
        assert adapter.edit_message.await_count == 1


class TestSendNotice:
    async def test_failure_returns_none(self) -> None:
        adapter = AsyncMock()
        adapter.send_message.side_effect = RuntimeError("nope")
        assert await send_notice(adapter, "c1", "hi") is None


# ---------------------------------------------------------------------------
# flush_message / flush_all
# ---------------------------------------------------------------------------


class TestFlush:
    async def test_empty_streaming_buffer_skipped(self, adapter) -> None:
        buffers = {"a1": MessageBuffer(message_id="a1")}
        assert not await flush_message(adapter, "c1", "a1", buffers, build_display_content)
        assert adapter.sent == []

    async def test_error_buffer_always_delivered(self, adapter) -> None:
        buffers = {"a1": MessageBuffer(message_id="a1", status=BufferStatus.ERROR, status_note="boom")}
        assert await flush_message(adapter, "c1", "a1", buffers, build_display_content)
        assert "## Error\nboom" in adapter.texts[0]

    async def test_flush_updates_timestamp(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1", text="x")
        await flush_message(adapter, "c1", "a1", {"a1": buf}, build_display_content)
        assert buf.last_update_time > 0

    async def test_flush_stamps_callers_clock(self, adapter) -> None:
        buf = MessageBuffer(message_id="a1", text="x")
        await flush_message(adapter, "c1", "a1", {"a1": buf}, build_display_content, now=42.0)
        assert buf.last_update_time == 42.0

    async def test_missing_buffer(self, adapter) -> None:
        assert not await flush_message(adapter, "c1", "zz", {}, build_display_content)

    async def test_flush_all_routes_each_session(self, adapter) -> None:
        mux = AdapterMux({"tg": adapter})
        buffers = {"a1": MessageBuffer(message_id="a1", text="one"), "a2": MessageBuffer(message_id="a2", text="two")}
        routes = {
            "s1": SessionRoute(chat_id="c1", sender_id="u", adapter_key="tg"),
            "s2": SessionRoute(chat_id="c2", sender_id="u", adapter_key="missing"),
        }
        delivered = await flush_all(mux, {"s1": "a1", "s2": "a2", "s3": "a3"}, routes, buffers, build_display_content)
        assert delivered == 1
        assert [chat for chat, _, _ in adapter.sent] == ["c1"]

    async def test_flush_all_uses_given_clock(self, adapter) -> None:
        mux = AdapterMux({"tg": adapter})
        buf = MessageBuffer(message_id="a1", text="one")
        routes = {"s1": SessionRoute(chat_id="c1", sender_id="u", adapter_key="tg")}
        await flush_all(mux, {"s1": "a1"}, routes, {"a1": buf}, build_display_content, clock=lambda: 7.5)
        assert buf.last_update_time == 7.5


class TestAdapterMux:
    def test_get_and_register(self, adapter) -> None:
        mux = AdapterMux()
        assert mux.get("tg") is None
        assert mux.get(None) is None
        mux.register("tg", adapter)
        assert mux.get("tg") is adapter
        assert "tg" in mux
        assert len(mux) == 1
        assert mux.keys() == ["tg"]

    def test_recording_adapter_satisfies_protocol(self, adapter) -> None:
        assert isinstance(adapter, BridgeAdapter)
