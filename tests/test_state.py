"""Tests for chatrelay.events.state."""

from __future__ import annotations

import asyncio

from chatrelay.bridge.buffer import BufferStatus, MessageBuffer
from chatrelay.config import BridgeConfig
from chatrelay.events.state import BridgeState, RecentMap, chat_cache_key


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# RecentMap
# ---------------------------------------------------------------------------


class TestRecentMap:
    def test_expiry(self) -> None:
        clock = FakeClock()
        recent: RecentMap[int] = RecentMap(10, 5.0, clock)
        recent.set("a", 1)
        clock.now += 4
        assert recent.get("a") == 1
        clock.now += 2
        assert recent.get("a") is None
        assert "a" not in recent

    def test_size_cap_evicts_oldest(self) -> None:
        recent: RecentMap[int] = RecentMap(2, 60.0, FakeClock())
        recent.set("a", 1)
        recent.set("b", 2)
        recent.set("c", 3)
        assert recent.get("a") is None
        assert len(recent) == 2

    def test_reset_moves_to_end(self) -> None:
        recent: RecentMap[int] = RecentMap(2, 60.0, FakeClock())
        recent.set("a", 1)
        recent.set("b", 2)
        recent.set("a", 3)
        recent.set("c", 4)
        assert recent.get("a") == 3
        assert recent.get("b") is None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRouting:
    def test_bind_last_writer_wins(self) -> None:
        state = BridgeState()
        state.bind_route("s1", "c1", "u1", "tg")
        state.bind_route("s1", "c2", "u2", "slack")
        route = state.route_target("s1")
        assert route is not None
        assert (route.chat_id, route.adapter_key) == ("c2", "slack")
        assert route.cache_key == chat_cache_key("slack", "c2") == "slack:c2"

    def test_hydrate_from_nested_route(self) -> None:
        state = BridgeState()
        assert state.hydrate_route("s1", {"route": {"chatId": "c9", "adapter": "tg"}})
        route = state.route_target("s1")
        assert route is not None
        assert route.chat_id == "c9"
        assert route.sender_id == "system"

    def test_hydrate_never_overwrites(self) -> None:
        state = BridgeState()
        state.bind_route("s1", "c1", "u1", "tg")
        assert state.hydrate_route("s1", {"chat_id": "c2", "adapter_key": "tg"})
        assert state.route_target("s1").chat_id == "c1"

    def test_hydrate_incomplete_metadata(self) -> None:
        state = BridgeState()
        assert not state.hydrate_route("s1", {"chat_id": "c1"})
        assert not state.hydrate_route("s1", None)
        assert state.route_target("s1") is None

    def test_route_miss_warning_rate_limited(self) -> None:
        clock = FakeClock()
        state = BridgeState(clock=clock)
        assert state.warn_route_miss("message.updated", "s1")
        assert not state.warn_route_miss("message.updated", "s1")
        clock.now += 31
        assert state.warn_route_miss("message.updated", "s1")


# ---------------------------------------------------------------------------
# Timers and pending records
# ---------------------------------------------------------------------------


class TestTimers:
    async def test_timer_fires(self) -> None:
        state = BridgeState()
        fired = asyncio.Event()

        async def _expire() -> None:
            fired.set()

        state.schedule_question_timeout("tg:c1", _expire, delay=0.01)
        await asyncio.wait_for(fired.wait(), 1.0)

    async def test_clear_cancels_timer(self) -> None:
        state = BridgeState()
        calls: list[str] = []

        async def _expire() -> None:
            calls.append("fired")

        task = state.schedule_authorization_timeout("tg:c1", _expire, delay=0.05)
        state.clear_pending_authorization("tg:c1")
        await asyncio.sleep(0.1)
        assert task.cancelled()
        assert calls == []

    async def test_rearm_replaces_timer(self) -> None:
        state = BridgeState()
        calls: list[str] = []

        async def _first() -> None:
            calls.append("first")

        async def _second() -> None:
            calls.append("second")

        state.schedule_question_timeout("tg:c1", _first, delay=0.02)
        state.schedule_question_timeout("tg:c1", _second, delay=0.02)
        await asyncio.sleep(0.1)
        assert calls == ["second"]

    async def test_timer_may_clear_itself(self) -> None:
        state = BridgeState()
        done = asyncio.Event()

        async def _expire() -> None:
            state.clear_pending_question("tg:c1")
            done.set()

        state.schedule_question_timeout("tg:c1", _expire, delay=0.01)
        await asyncio.wait_for(done.wait(), 1.0)
        assert "tg:c1" not in state.question_timers


class TestHandledLedger:
    def test_mark_and_clear(self) -> None:
        state = BridgeState()
        state.mark_question_call_handled("tg:c1", "m1", "call_1")
        assert state.is_question_call_handled("tg:c1", "m1", "call_1")
        assert not state.is_question_call_handled("tg:c1", "m1", "call_2")
        assert not state.is_question_call_handled("tg:c2", "m1", "call_1")
        state.clear_handled_questions("tg:c1")
        assert not state.is_question_call_handled("tg:c1", "m1", "call_1")


# ---------------------------------------------------------------------------
# Buffers and lifecycle
# ---------------------------------------------------------------------------


class TestPruneBuffers:
    def test_prunes_finished_first(self) -> None:
        state = BridgeState(max_buffers=3, sweep_batch=10)
        for i in range(5):
            state.buffers[f"m{i}"] = MessageBuffer(message_id=f"m{i}", status=BufferStatus.DONE)
        state.buffers["m0"].status = BufferStatus.STREAMING
        state.active_msgs["s1"] = "m1"
        removed = state.prune_buffers()
        assert removed == 2
        assert set(state.buffers) == {"m0", "m1", "m4"}

    def test_under_limit_noop(self) -> None:
        state = BridgeState(max_buffers=3)
        state.buffers["m0"] = MessageBuffer(message_id="m0", status=BufferStatus.DONE)
        assert state.prune_buffers() == 0


class TestLifecycle:
    def test_from_config(self) -> None:
        config = BridgeConfig.model_validate(
            {"interaction": {"question_timeout": 60}, "listener": {"degraded_threshold": 5}, "agent": {"directory": "/p"}}
        )
        state = BridgeState.from_config(config)
        assert state.question_timeout == 60
        assert state.degraded_threshold == 5
        assert state.project_dir == "/p"
        assert state.flush_intervals == {"telegram": 2.5}

    def test_reset_clears_everything(self) -> None:
        state = BridgeState()
        state.bind_route("s1", "c1", "u1", "tg")
        state.active_msgs["s1"] = "m1"
        state.buffers["m1"] = MessageBuffer(message_id="m1")
        state.session_cache["tg:c1"] = "s1"
        state.mark_question_call_handled("tg:c1", "m1", "call_1")
        state.forwarded_parts.set("p1", True)
        state.reset()
        assert not state.routes
        assert not state.active_msgs
        assert not state.buffers
        assert not state.session_cache
        assert not state.handled_questions
        assert len(state.forwarded_parts) == 0
