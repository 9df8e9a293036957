"""Tests for chatrelay.proxy.interaction."""

from __future__ import annotations

import asyncio

from chatrelay.events.state import BridgeState
from chatrelay.events.types import BridgeEvent
from chatrelay.proxy.authorization import AuthorizationMode
from chatrelay.proxy.interaction import (
    arm_pending_question,
    capture_question_if_needed,
    handle_permission_replied,
    handle_permission_updated,
    handle_question_asked,
    handle_question_rejected,
    handle_question_replied,
    should_skip_duplicate_permission_event,
)
from chatrelay.proxy.question import extract_question_payload


def _question_part(call_id: str = "call_q") -> dict:
    return {
        "id": "p1",
        "type": "tool",
        "tool": "question",
        "callID": call_id,
        "state": {"status": "running", "input": {"questions": [{"question": "Proceed?", "options": ["Yes", "No"]}]}},
    }


def _permission(permission_id: str = "per_1", **extra) -> BridgeEvent:
    props = {"sessionID": "s1", "id": permission_id, "type": "bash", "title": "Run tests", "pattern": "pytest"}
    props.update(extra)
    return BridgeEvent(type="permission.updated", properties=props)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


class TestQuestionCapture:
    async def test_capture_arms_and_prompts(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        assert await capture_question_if_needed(_question_part(), "s1", "m1", mux, state)
        pending = state.pending_questions["tg:c1"]
        assert pending.call_id == "call_q"
        assert pending.payload.questions[0].question == "Proceed?"
        assert len(adapter.sent) == 1
        assert adapter.texts[0].startswith("## Question")
        state.clear_all_pending_questions()

    async def test_same_call_prompts_once(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await capture_question_if_needed(_question_part(), "s1", "m1", mux, state)
        assert await capture_question_if_needed(_question_part(), "s1", "m1", mux, state)
        assert len(adapter.sent) == 1
        state.clear_all_pending_questions()

    async def test_handled_call_not_rearmed(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        state.mark_question_call_handled("tg:c1", "m1", "call_q")
        assert not await capture_question_if_needed(_question_part(), "s1", "m1", mux, state)
        assert adapter.sent == []

    async def test_non_question_part_ignored(self, mux, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        part = {"type": "tool", "tool": "bash", "callID": "c"}
        assert not await capture_question_if_needed(part, "s1", "m1", mux, state)

    async def test_unrouted_session(self, mux, state) -> None:
        assert not await capture_question_if_needed(_question_part(), "s1", "m1", mux, state)
        assert not state.pending_questions

    async def test_timeout_notifies_once_and_marks_handled(self, mux, adapter) -> None:
        state = BridgeState(question_timeout=0.02)
        state.bind_route("s1", "c1", "u1", "tg")
        payload = extract_question_payload({"question": "Proceed?", "options": ["Yes"]})
        await arm_pending_question(
            session_id="s1", message_id="m1", call_id="call_q", payload=payload, mux=mux, state=state
        )
        await asyncio.sleep(0.1)
        assert "tg:c1" not in state.pending_questions
        assert state.is_question_call_handled("tg:c1", "m1", "call_q")
        assert adapter.texts[-1].startswith("## Status\n⏰")
        assert len(adapter.sent) == 2


class TestQuestionEvents:
    async def test_asked_uses_request_id(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        event = BridgeEvent(
            type="question.asked",
            properties={
                "id": "que_1",
                "sessionID": "s1",
                "questions": [{"question": "Which?", "options": [{"label": "A"}, {"label": "B"}]}],
                "tool": {"messageID": "m1", "callID": "call_x"},
            },
        )
        await handle_question_asked(event, mux, state)
        pending = state.pending_questions["tg:c1"]
        assert pending.request_id == "que_1"
        assert pending.call_id == "call_x"
        assert pending.message_id == "m1"
        state.clear_all_pending_questions()

    async def test_asked_invalid_payload(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_question_asked(
            BridgeEvent(type="question.asked", properties={"sessionID": "s1", "questions": []}), mux, state
        )
        assert not state.pending_questions
        assert adapter.sent == []

    async def test_replied_clears_by_request_id(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        payload = extract_question_payload({"question": "Proceed?", "options": ["Yes"]})
        await arm_pending_question(
            session_id="s1", message_id="m1", call_id="call_q", payload=payload, mux=mux, state=state, request_id="que_1"
        )
        await handle_question_replied(
            BridgeEvent(type="question.replied", properties={"sessionID": "s1", "requestID": "que_1"}), mux, state
        )
        assert not state.pending_questions
        assert state.is_question_call_handled("tg:c1", "m1", "call_q")
        assert "answered" in adapter.texts[-1]

    async def test_rejected_other_request_kept(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        payload = extract_question_payload({"question": "Proceed?", "options": ["Yes"]})
        await arm_pending_question(
            session_id="s1", message_id="m1", call_id="call_q", payload=payload, mux=mux, state=state, request_id="que_1"
        )
        await handle_question_rejected(
            BridgeEvent(type="question.rejected", properties={"sessionID": "s1", "requestID": "que_9"}), mux, state
        )
        assert "tg:c1" in state.pending_questions
        state.clear_all_pending_questions()


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class TestPermissionEvents:
    async def test_prompt_and_pending(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission(), mux, state)
        pending = state.pending_authorizations["tg:c1"]
        assert pending.mode is AuthorizationMode.PERMISSION_REQUEST
        assert pending.permission_id == "per_1"
        assert pending.permission_pattern == "pytest"
        assert len(adapter.sent) == 1
        assert "Permission: Run tests" in adapter.texts[0]
        state.clear_all_pending_authorizations()

    async def test_duplicate_event_dropped(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission(), mux, state)
        await handle_permission_updated(_permission(), mux, state)
        assert len(adapter.sent) == 1
        state.clear_all_pending_authorizations()

    async def test_second_request_updates_without_reprompt(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission("per_1"), mux, state)
        await handle_permission_updated(_permission("per_2", title="Run lint"), mux, state)
        pending = state.pending_authorizations["tg:c1"]
        assert pending.permission_id == "per_2"
        assert pending.permission_title == "Run lint"
        assert len(adapter.sent) == 1
        state.clear_all_pending_authorizations()

    async def test_same_signature_not_reprompted_after_clear(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission("per_1"), mux, state)
        state.clear_pending_authorization("tg:c1")
        await handle_permission_updated(_permission("per_2"), mux, state)
        assert len(adapter.sent) == 1

    async def test_unrouted_permission(self, mux, adapter, state) -> None:
        await handle_permission_updated(_permission(), mux, state)
        assert adapter.sent == []
        assert not state.pending_authorizations

    async def test_permission_timeout(self, mux, adapter) -> None:
        state = BridgeState(auth_timeout=0.02)
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission(), mux, state)
        await asyncio.sleep(0.1)
        assert not state.pending_authorizations
        assert "timed out" in adapter.texts[-1]

    async def test_replied_clears_matching_request(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission(), mux, state)
        await handle_permission_replied(
            BridgeEvent(
                type="permission.replied", properties={"sessionID": "s1", "requestID": "per_1", "reply": "always"}
            ),
            mux,
            state,
        )
        assert not state.pending_authorizations
        assert "always allow" in adapter.texts[-1]

    async def test_replied_other_request_ignored(self, mux, adapter, state) -> None:
        state.bind_route("s1", "c1", "u1", "tg")
        await handle_permission_updated(_permission(), mux, state)
        await handle_permission_replied(
            BridgeEvent(type="permission.replied", properties={"sessionID": "s1", "permissionID": "per_x"}),
            mux,
            state,
        )
        assert "tg:c1" in state.pending_authorizations
        state.clear_all_pending_authorizations()


class TestDedupeWindow:
    def test_window(self) -> None:
        now = [100.0]
        state = BridgeState(clock=lambda: now[0], permission_dedupe_window=3.0)
        assert not should_skip_duplicate_permission_event(state, "request", "s1", "p1")
        assert should_skip_duplicate_permission_event(state, "request", "s1", "p1")
        assert not should_skip_duplicate_permission_event(state, "reply", "s1", "p1")
        now[0] += 5
        assert not should_skip_duplicate_permission_event(state, "request", "s1", "p1")
