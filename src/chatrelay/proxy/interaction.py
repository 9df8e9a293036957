"""Event-side handlers of the question and authorization protocols.

These react to upstream events: they arm pending interrupts, prompt the
chat, and clear interrupts the backend resolved on its own. The reply side
(parsing what the user types) lives in ``chatrelay.flow.incoming``.
"""

from __future__ import annotations

import logging
from typing import Any

from chatrelay.bridge.delivery import send_notice
from chatrelay.bridge.mux import AdapterMux
from chatrelay.events.state import BridgeState, chat_cache_key
from chatrelay.events.types import BridgeEvent, as_dict, read_str
from chatrelay.proxy.authorization import (
    AuthorizationMode,
    PendingAuthorizationState,
    permission_signature,
    pattern_text,
    render_authorization_prompt,
    render_authorization_status,
    render_permission_replied,
)
from chatrelay.proxy.question import (
    PendingQuestionState,
    QuestionPayload,
    extract_question_payload,
    is_question_tool_part,
    render_question_prompt,
    render_timeout_notice,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


async def arm_pending_question(
    *,
    session_id: str,
    message_id: str,
    call_id: str,
    payload: QuestionPayload,
    mux: AdapterMux,
    state: BridgeState,
    request_id: str | None = None,
) -> bool:
    """Hold the chat on a question and prompt it.

    Returns True when the question is (or already was) pending for this
    call, False when the session is unroutable or the call was handled.
    """
    route = state.route_target(session_id)
    if route is None:
        return False
    cache_key = route.cache_key

    if state.is_question_call_handled(cache_key, message_id, call_id):
        return False
    existing = state.pending_questions.get(cache_key)
    if existing is not None and existing.call_id == call_id and existing.message_id == message_id:
        return True

    state.clear_pending_question(cache_key)
    now = state.clock()
    pending = PendingQuestionState(
        key=cache_key,
        adapter_key=route.adapter_key,
        chat_id=route.chat_id,
        session_id=session_id,
        message_id=message_id,
        call_id=call_id,
        payload=payload,
        created_at=now,
        due_at=now + state.question_timeout,
        request_id=request_id,
    )
    state.pending_questions[cache_key] = pending
    logger.info(
        "question armed sid=%s mid=%s call=%s questions=%d",
        session_id,
        message_id,
        call_id,
        len(payload.questions),
    )

    adapter = mux.get(route.adapter_key)
    if adapter is not None:
        await send_notice(adapter, route.chat_id, render_question_prompt(pending, state.question_timeout))

    async def _expire() -> None:
        current = state.pending_questions.get(cache_key)
        if current is None or current.call_id != call_id or current.message_id != message_id:
            return
        state.mark_question_call_handled(cache_key, message_id, call_id)
        state.clear_pending_question(cache_key)
        logger.info("question timed out sid=%s call=%s", session_id, call_id)
        current_adapter = mux.get(current.adapter_key)
        if current_adapter is not None:
            await send_notice(current_adapter, current.chat_id, render_timeout_notice())

    state.schedule_question_timeout(cache_key, _expire)
    return True


async def capture_question_if_needed(
    part: dict[str, Any],
    session_id: str,
    message_id: str,
    mux: AdapterMux,
    state: BridgeState,
) -> bool:
    """Intercept a ``question`` tool part before it renders as content."""
    if not is_question_tool_part(part):
        return False
    payload = extract_question_payload(as_dict(part.get("state")).get("input"))
    if payload is None:
        return False
    call_id = read_str(part, "callID") or f"question-{message_id}"
    return await arm_pending_question(
        session_id=session_id,
        message_id=message_id,
        call_id=call_id,
        payload=payload,
        mux=mux,
        state=state,
    )


async def handle_question_asked(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    if not session_id:
        return

    questions = props.get("questions") if isinstance(props.get("questions"), list) else []
    payload = extract_question_payload({"questions": questions})
    if payload is None:
        logger.warning("question.asked ignored sid=%s reason=invalid-payload questions=%d", session_id, len(questions))
        return

    tool = as_dict(props.get("tool"))
    message_id = read_str(tool, "messageID") or read_str(props, "messageID") or f"question-{session_id}"
    call_id = read_str(tool, "callID") or read_str(props, "id", "requestID") or f"question-{message_id}"
    await arm_pending_question(
        session_id=session_id,
        message_id=message_id,
        call_id=call_id,
        payload=payload,
        mux=mux,
        state=state,
        request_id=read_str(props, "id", "requestID"),
    )


def _find_pending_question(
    state: BridgeState, session_id: str, request_id: str | None
) -> PendingQuestionState | None:
    for pending in state.pending_questions.values():
        if pending.session_id != session_id:
            continue
        if not request_id or request_id in (pending.call_id, pending.request_id):
            return pending
    return None


async def _close_question(event: BridgeEvent, mux: AdapterMux, state: BridgeState, notice: str) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    if not session_id:
        return
    pending = _find_pending_question(state, session_id, read_str(props, "requestID"))
    if pending is None:
        return
    state.clear_pending_question(pending.key)
    state.mark_question_call_handled(pending.key, pending.message_id, pending.call_id)
    logger.info("%s sid=%s call=%s", event.type, session_id, pending.call_id)

    adapter = mux.get(pending.adapter_key)
    if adapter is not None:
        await send_notice(adapter, pending.chat_id, notice)


async def handle_question_replied(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    await _close_question(event, mux, state, "## Status\n✅ Question answered, continuing.")


async def handle_question_rejected(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    await _close_question(event, mux, state, "## Status\n⚠️ The question was cancelled. Ask again to restart.")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def should_skip_duplicate_permission_event(state: BridgeState, scope: str, session_id: str, item_id: str) -> bool:
    """True when the same request/reply event was seen within the dedupe window."""
    now = state.clock()
    key = f"{scope}:{session_id}:{item_id}"
    last = state.permission_events.get(key)
    state.permission_events.set(key, now)
    return last is not None and now - last < state.permission_dedupe_window


def _update_permission_fields(
    pending: PendingAuthorizationState,
    permission_id: str,
    permission_type: str | None,
    title: str,
    pattern: str | list[str] | None,
) -> None:
    pending.permission_id = permission_id
    pending.permission_type = permission_type
    pending.permission_title = title
    pending.permission_pattern = pattern


async def handle_permission_updated(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    permission_id = read_str(props, "id", "permissionID", "requestID")
    permission_type = read_str(props, "type", "permission")
    title = read_str(props, "title") or permission_type or "Permission request"
    raw_pattern = props.get("pattern")
    if raw_pattern is None and isinstance(props.get("patterns"), list):
        raw_pattern = props["patterns"]
    pattern: str | list[str] | None = raw_pattern if isinstance(raw_pattern, (str, list)) else None
    call_id = read_str(props, "callID") or read_str(as_dict(props.get("tool")), "callID")

    if not session_id or not permission_id:
        return
    if should_skip_duplicate_permission_event(state, "request", session_id, permission_id):
        logger.debug("permission dedupe skip request sid=%s permission=%s", session_id, permission_id)
        return
    logger.info(
        "permission updated sid=%s permission=%s type=%s call=%s title=%s pattern=%s",
        session_id,
        permission_id,
        permission_type or "-",
        call_id or "-",
        title[:160],
        pattern_text(pattern, "|") or "-",
    )

    route = state.route_target(session_id)
    if route is None:
        state.warn_route_miss(event.type, session_id)
        return
    adapter = mux.get(route.adapter_key)
    if adapter is None:
        return
    cache_key = chat_cache_key(route.adapter_key, route.chat_id)

    existing = state.pending_authorizations.get(cache_key)
    if (
        existing is not None
        and existing.mode is AuthorizationMode.PERMISSION_REQUEST
        and existing.session_id == session_id
    ):
        _update_permission_fields(existing, permission_id, permission_type, title, pattern)
        existing.blocked_reason = title
        logger.debug("permission pending updated without re-prompt sid=%s permission=%s", session_id, permission_id)
        return

    signature = permission_signature(permission_type, title, pattern, call_id)
    now = state.clock()
    previous = state.permission_prompts.get(cache_key)
    if previous is not None:
        prev_at, prev_signature = previous
        if prev_signature == signature and now - prev_at < state.permission_prompt_window:
            pending = state.pending_authorizations.get(cache_key)
            if pending is not None and pending.mode is AuthorizationMode.PERMISSION_REQUEST:
                _update_permission_fields(pending, permission_id, permission_type, title, pattern)
            logger.debug("permission dedupe skip prompt sid=%s permission=%s sig=%s", session_id, permission_id, signature)
            return
    state.permission_prompts.set(cache_key, (now, signature))

    state.clear_pending_authorization(cache_key)
    pending = PendingAuthorizationState(
        mode=AuthorizationMode.PERMISSION_REQUEST,
        key=cache_key,
        adapter_key=route.adapter_key,
        chat_id=route.chat_id,
        sender_id=route.sender_id,
        session_id=session_id,
        created_at=now,
        due_at=now + state.auth_timeout,
        blocked_reason=title,
        permission_id=permission_id,
        permission_type=permission_type,
        permission_title=title,
        permission_pattern=pattern,
    )
    state.pending_authorizations[cache_key] = pending

    async def _expire() -> None:
        current = state.pending_authorizations.get(cache_key)
        if current is None or current.permission_id != permission_id:
            return
        state.clear_pending_authorization(cache_key)
        logger.info("permission request timed out sid=%s permission=%s", session_id, permission_id)
        await send_notice(adapter, route.chat_id, render_authorization_status("permission-timeout"))

    state.schedule_authorization_timeout(cache_key, _expire)
    await send_notice(adapter, route.chat_id, render_authorization_prompt(pending))


async def handle_permission_replied(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    if not session_id:
        return
    permission_id = read_str(props, "permissionID", "requestID") or ""
    response = read_str(props, "response", "reply") or "-"
    if permission_id and should_skip_duplicate_permission_event(state, "reply", session_id, permission_id):
        logger.debug("permission dedupe skip reply sid=%s permission=%s", session_id, permission_id)
        return
    logger.info("permission replied sid=%s permission=%s response=%s", session_id, permission_id or "-", response)

    route = state.route_target(session_id)
    if route is None:
        return
    pending = state.pending_authorizations.get(route.cache_key)
    if pending is None or pending.mode is not AuthorizationMode.PERMISSION_REQUEST:
        return
    if not pending.permission_id or pending.permission_id != permission_id:
        return
    state.clear_pending_authorization(route.cache_key)

    adapter = mux.get(route.adapter_key)
    if adapter is not None:
        await send_notice(adapter, route.chat_id, render_permission_replied(response))
