"""Route upstream agent events to handlers.

``message.part.updated`` is the hot path: it hydrates routes, forwards
scheduler callbacks, carries or closes the previous assistant message,
applies the part, captures question tools, splits the final answer out of
an execution card, and finally sends or edits the platform message under
the per-adapter throttle.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chatrelay.bridge.buffer import (
    BufferStatus,
    MessageBuffer,
    apply_part_to_buffer,
    get_or_init_buffer,
    mark_status,
    should_flush_now,
)
from chatrelay.bridge.delivery import deliver, flush_message, safe_edit_with_retry, send_notice
from chatrelay.bridge import delivery
from chatrelay.bridge.execution import (
    build_finalized_execution_content,
    build_platform_display,
    carry_platform_message,
    should_carry_platform_message_across_assistant_messages,
    should_split_out_final_answer,
    split_final_answer_from_execution,
)
from chatrelay.bridge.mux import AdapterMux, BridgeAdapter
from chatrelay.errors import extract_error_message
from chatrelay.events.state import BridgeState, SessionRoute
from chatrelay.events.types import (
    KNOWN_EVENT_TYPES,
    KNOWN_PART_TYPES,
    BridgeEvent,
    EventType,
    as_dict,
    read_str,
)
from chatrelay.proxy import interaction

logger = logging.getLogger(__name__)

Handler = Callable[[BridgeEvent, AdapterMux, BridgeState], Awaitable[None]]


def is_scheduler_callback_metadata(metadata: Any) -> bool:
    """Part metadata written by a scheduled task rather than by this bridge."""
    if not isinstance(metadata, dict):
        return False
    if read_str(metadata, "source") == "scheduler.callback":
        return True
    if metadata.get("bridge") is True and isinstance(metadata.get("task_id"), str):
        return True
    return isinstance(metadata.get("task_id"), str) and isinstance(metadata.get("run_id"), str)


def _resolve_target(
    session_id: str, mux: AdapterMux, state: BridgeState
) -> tuple[SessionRoute, BridgeAdapter] | None:
    route = state.route_target(session_id)
    if route is None:
        return None
    adapter = mux.get(route.adapter_key)
    if adapter is None:
        return None
    return route, adapter


async def _flush(adapter: BridgeAdapter, route: SessionRoute, message_id: str, state: BridgeState) -> None:
    await flush_message(
        adapter, route.chat_id, message_id, state.buffers, build_platform_display, force=True, now=state.clock()
    )


async def flush_all(mux: AdapterMux, state: BridgeState) -> int:
    """Force-deliver the active buffer of every routed session."""
    return await delivery.flush_all(
        mux, state.active_msgs, state.routes, state.buffers, build_platform_display, clock=state.clock
    )


# ---------------------------------------------------------------------------
# message.updated
# ---------------------------------------------------------------------------


def classify_error(err: Any) -> tuple[BufferStatus, str]:
    """Map an agent error object to a terminal status and note."""
    name = read_str(err, "name")
    message = extract_error_message(err)
    if name == "MessageAbortedError":
        return BufferStatus.ABORTED, message or "aborted"
    if name == "MessageOutputLengthError":
        return BufferStatus.ERROR, "output too long"
    if name == "APIError":
        return BufferStatus.ERROR, message or "api error"
    return BufferStatus.ERROR, message or name or "error"


async def handle_message_updated(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    info = as_dict(event.properties.get("info"))
    message_id = read_str(info, "id")
    role = read_str(info, "role")
    if message_id and role:
        state.roles[message_id] = role

    session_id = read_str(info, "sessionID")
    if role != "assistant" or not message_id or not session_id:
        return

    target = _resolve_target(session_id, mux, state)
    if target is None:
        state.warn_route_miss(event.type, session_id, message_id)
        return
    route, adapter = target
    state.active_msgs.setdefault(session_id, message_id)

    error = info.get("error")
    if error:
        pending = state.pending_questions.get(route.cache_key)
        if pending is not None and pending.message_id == message_id:
            # The question tool ends the turn; the user reply resumes it.
            mark_status(state.buffers, message_id, BufferStatus.DONE, "awaiting-user-reply")
        else:
            status, note = classify_error(error)
            mark_status(state.buffers, message_id, status, note)
            logger.warning("message error sid=%s mid=%s status=%s note=%s", session_id, message_id, status.value, note)
        await _flush(adapter, route, message_id, state)
        return

    finish = read_str(info, "finish")
    completed = as_dict(info.get("time")).get("completed")
    if finish or completed:
        mark_status(state.buffers, message_id, BufferStatus.DONE, finish or "completed")
        await _flush(adapter, route, message_id, state)
        state.prune_buffers()


# ---------------------------------------------------------------------------
# message.part.updated
# ---------------------------------------------------------------------------


async def _forward_scheduler_part(
    part: dict[str, Any], session_id: str, message_id: str, route: SessionRoute, adapter: BridgeAdapter, state: BridgeState
) -> None:
    dedupe_key = f"{session_id}:{message_id}:{part.get('id')}"
    if dedupe_key in state.forwarded_parts:
        return
    state.forwarded_parts.set(dedupe_key, True)
    await send_notice(adapter, route.chat_id, part["text"])
    logger.info("scheduler part forwarded sid=%s mid=%s chat=%s", session_id, message_id, route.chat_id)


async def _switch_active_message(
    session_id: str, message_id: str, route: SessionRoute, adapter: BridgeAdapter, state: BridgeState
) -> None:
    """Carry the previous message's platform card forward, or close it."""
    prev_id = state.active_msgs.get(session_id)
    if prev_id and prev_id != message_id:
        prev = state.buffers.get(prev_id)
        nxt = get_or_init_buffer(state.buffers, message_id)
        if prev is not None and should_carry_platform_message_across_assistant_messages(prev):
            carry_platform_message(prev, nxt)
            logger.info("carry execution sid=%s prev=%s next=%s", session_id, prev_id, message_id)
        else:
            logger.debug(
                "close previous sid=%s prev=%s next=%s platform=%s",
                session_id,
                prev_id,
                message_id,
                prev.platform_msg_id if prev else "-",
            )
            mark_status(state.buffers, prev_id, BufferStatus.DONE)
            await _flush(adapter, route, prev_id, state)
            state.prune_buffers()
    state.active_msgs[session_id] = message_id


async def _finalize_execution_card(adapter: BridgeAdapter, chat_id: str, buffer: MessageBuffer) -> None:
    if not buffer.platform_msg_id:
        return
    await safe_edit_with_retry(adapter, chat_id, buffer.platform_msg_id, build_finalized_execution_content(buffer))
    logger.info("execution card finalized chat=%s mid=%s", chat_id, buffer.message_id)


async def handle_message_part_updated(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    part = as_dict(props.get("part"))
    delta = props.get("delta") if isinstance(props.get("delta"), str) else None
    session_id = read_str(part, "sessionID")
    message_id = read_str(part, "messageID")
    if not session_id or not message_id:
        return

    part_type = part.get("type")
    if isinstance(part_type, str) and part_type not in KNOWN_PART_TYPES:
        logger.warning("unknown part sid=%s mid=%s pid=%s type=%s", session_id, message_id, part.get("id") or "-", part_type)

    metadata = part.get("metadata")
    if metadata:
        state.hydrate_route(session_id, metadata)

    target = _resolve_target(session_id, mux, state)
    if target is None:
        state.warn_route_miss(event.type, session_id, message_id)
        return
    route, adapter = target

    role = state.roles.get(message_id)
    if role == "user":
        if part_type == "text" and isinstance(part.get("text"), str) and is_scheduler_callback_metadata(metadata):
            await _forward_scheduler_part(part, session_id, message_id, route, adapter, state)
        return

    await _switch_active_message(session_id, message_id, route, adapter, state)

    buffer = get_or_init_buffer(state.buffers, message_id)
    cache_key = route.cache_key
    buffer.selected_agent = state.chat_agent.get(cache_key)
    buffer.selected_model = state.chat_model.get(cache_key)
    apply_part_to_buffer(buffer, part, delta)

    if part_type == "tool" and await interaction.capture_question_if_needed(part, session_id, message_id, mux, state):
        mark_status(state.buffers, message_id, BufferStatus.DONE, "awaiting-user-reply")

    logger.debug(
        "part applied sid=%s mid=%s part=%s text=%d reasoning=%d tools=%d status=%s",
        session_id,
        message_id,
        part_type,
        len(buffer.text),
        len(buffer.reasoning),
        len(buffer.tools),
        buffer.status.value,
    )

    if should_split_out_final_answer(buffer):
        logger.info("split final answer sid=%s mid=%s text=%d", session_id, message_id, len(buffer.text))
        await _finalize_execution_card(adapter, route.chat_id, buffer)
        split_final_answer_from_execution(buffer)

    if part_type == "step-finish" and buffer.status is BufferStatus.STREAMING:
        mark_status(state.buffers, message_id, BufferStatus.DONE, read_str(part, "reason") or "step-finish")
        state.prune_buffers()

    now = state.clock()
    if not should_flush_now(
        buffer,
        route.adapter_key,
        intervals=state.flush_intervals,
        default_interval=state.default_flush_interval,
        now=now,
    ):
        logger.debug("skip flush sid=%s mid=%s reason=throttle", session_id, message_id)
        return
    if not buffer.has_content:
        logger.debug("skip flush sid=%s mid=%s reason=empty", session_id, message_id)
        return

    buffer.last_update_time = now
    await deliver(adapter, route.chat_id, buffer, build_platform_display(buffer))


# ---------------------------------------------------------------------------
# session.*
# ---------------------------------------------------------------------------


async def handle_session_error(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    if not session_id:
        return
    target = _resolve_target(session_id, mux, state)
    if target is None:
        state.warn_route_miss(event.type, session_id)
        return
    route, adapter = target
    message_id = state.active_msgs.get(session_id)
    if not message_id:
        return

    error = props.get("error")
    name = read_str(error, "name")
    message = extract_error_message(error)
    if name == "MessageAbortedError":
        mark_status(state.buffers, message_id, BufferStatus.ABORTED, message or "aborted")
    else:
        mark_status(state.buffers, message_id, BufferStatus.ERROR, message or name or "session.error")
    logger.warning("session error sid=%s mid=%s name=%s msg=%s", session_id, message_id, name or "-", message or "-")
    await _flush(adapter, route, message_id, state)
    state.prune_buffers()


async def handle_session_idle(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    session_id = read_str(event.properties, "sessionID")
    if not session_id:
        return
    target = _resolve_target(session_id, mux, state)
    if target is None:
        state.warn_route_miss(event.type, session_id)
        return
    route, adapter = target
    message_id = state.active_msgs.get(session_id)
    if not message_id:
        return

    buffer = state.buffers.get(message_id)
    if buffer is None or buffer.status not in (BufferStatus.ERROR, BufferStatus.ABORTED):
        mark_status(state.buffers, message_id, BufferStatus.DONE, "idle")
    await _flush(adapter, route, message_id, state)
    state.prune_buffers()


async def handle_session_status(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    session_id = read_str(props, "sessionID")
    status = as_dict(props.get("status"))
    status_type = read_str(status, "type")
    if not session_id or not status_type:
        return
    message_id = state.active_msgs.get(session_id)
    buffer = state.buffers.get(message_id) if message_id else None
    if buffer is None or buffer.status is not BufferStatus.STREAMING:
        return
    if status_type == "retry":
        retry_message = read_str(status, "message")
        buffer.status_note = f"retry: {retry_message}" if retry_message else "retry"
    elif status_type == "busy":
        buffer.status_note = "busy"


# ---------------------------------------------------------------------------
# bookkeeping events
# ---------------------------------------------------------------------------


async def handle_command_executed(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    message_id = read_str(event.properties, "messageID")
    if message_id:
        get_or_init_buffer(state.buffers, message_id).is_command = True


async def handle_message_removed(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    session_id = read_str(event.properties, "sessionID")
    message_id = read_str(event.properties, "messageID")
    if not session_id or not message_id:
        return
    state.buffers.pop(message_id, None)
    state.roles.pop(message_id, None)
    if state.active_msgs.get(session_id) == message_id:
        del state.active_msgs[session_id]
    logger.debug("message removed sid=%s mid=%s", session_id, message_id)


async def handle_message_part_removed(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    props = event.properties
    logger.debug(
        "message part removed sid=%s mid=%s pid=%s",
        read_str(props, "sessionID") or "-",
        read_str(props, "messageID") or "-",
        read_str(props, "partID") or "-",
    )


# ---------------------------------------------------------------------------
# dispatch table
# ---------------------------------------------------------------------------

HANDLERS: dict[EventType, Handler] = {
    EventType.MESSAGE_UPDATED: handle_message_updated,
    EventType.MESSAGE_PART_UPDATED: handle_message_part_updated,
    EventType.SESSION_ERROR: handle_session_error,
    EventType.SESSION_IDLE: handle_session_idle,
    EventType.SESSION_STATUS: handle_session_status,
    EventType.PERMISSION_UPDATED: interaction.handle_permission_updated,
    EventType.PERMISSION_ASKED: interaction.handle_permission_updated,
    EventType.PERMISSION_REPLIED: interaction.handle_permission_replied,
    EventType.QUESTION_ASKED: interaction.handle_question_asked,
    EventType.QUESTION_REPLIED: interaction.handle_question_replied,
    EventType.QUESTION_REJECTED: interaction.handle_question_rejected,
    EventType.COMMAND_EXECUTED: handle_command_executed,
    EventType.MESSAGE_REMOVED: handle_message_removed,
    EventType.MESSAGE_PART_REMOVED: handle_message_part_removed,
}


async def dispatch_event(event: BridgeEvent, mux: AdapterMux, state: BridgeState) -> None:
    """Run the handler for ``event``. Never raises."""
    kind = event.kind
    handler = HANDLERS.get(kind) if kind is not None else None
    if handler is None:
        if event.type in KNOWN_EVENT_TYPES:
            logger.debug("unhandled event type=%s", event.type)
        else:
            logger.warning("unknown event type=%s", event.type)
        return
    try:
        await handler(event, mux, state)
    except Exception:
        logger.exception("handler failed type=%s", event.type)
