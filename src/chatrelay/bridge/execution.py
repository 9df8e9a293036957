"""Decide whether execution output and the final answer share a platform message.

Within one session turn the agent may emit several assistant message ids in
a row, typically tool-call narration followed by the answer. While the
earlier message is still "execution" the later one reuses its platform
message (carry). Once the carried message grows a substantive answer, the
answer is split out into a fresh platform message so it does not get buried
under the tool trace.
"""

from __future__ import annotations

from dataclasses import replace

from chatrelay.bridge.buffer import BufferStatus, MessageBuffer
from chatrelay.bridge.display import build_display_content, render_view

SPLIT_MIN_ANSWER_CHARS = 120


def has_substantive_answer_text(buffer: MessageBuffer) -> bool:
    return len(buffer.text.strip()) > 1


def has_execution_like_content(buffer: MessageBuffer) -> bool:
    return bool(buffer.tools) or bool(buffer.reasoning.strip())


def is_tool_call_phase(buffer: MessageBuffer) -> bool:
    note = buffer.status_note.lower()
    return "tool-calls" in note or "tool calls" in note


def should_carry_platform_message_across_assistant_messages(prev: MessageBuffer | None) -> bool:
    if prev is None or not prev.platform_msg_id:
        return False
    if prev.status in (BufferStatus.ERROR, BufferStatus.ABORTED):
        return False
    if is_tool_call_phase(prev):
        return True
    if not has_execution_like_content(prev):
        return False
    return not has_substantive_answer_text(prev)


def carry_platform_message(prev: MessageBuffer, nxt: MessageBuffer) -> None:
    """Move ``prev``'s platform message to ``nxt``; prev gives it up."""
    nxt.platform_msg_id = prev.platform_msg_id
    nxt.last_display_hash = ""
    nxt.execution_carried = True
    if not nxt.tools and prev.tools:
        nxt.tools = {call_id: replace(tool) for call_id, tool in prev.tools.items()}
    if not nxt.files and prev.files:
        nxt.files = list(prev.files)
    prev.platform_msg_id = None


def should_split_out_final_answer(buffer: MessageBuffer) -> bool:
    if not buffer.platform_msg_id or not buffer.execution_carried:
        return False
    if is_tool_call_phase(buffer):
        return False
    return len(buffer.text.strip()) >= SPLIT_MIN_ANSWER_CHARS


def split_final_answer_from_execution(buffer: MessageBuffer) -> None:
    buffer.platform_msg_id = None
    buffer.last_display_hash = ""
    buffer.execution_carried = False
    # The answer gets a clean message without the execution history.
    buffer.tools = {}
    buffer.reasoning = ""


def build_finalized_execution_content(buffer: MessageBuffer) -> str:
    """Closing render of an execution card: no answer text, status done."""
    return render_view(
        buffer,
        text="",
        status=BufferStatus.DONE,
        status_note=buffer.status_note or "tool-calls",
    )


def build_platform_display(buffer: MessageBuffer) -> str:
    # Partial answers stay hidden inside a streaming execution card.
    if (
        buffer.execution_carried
        and has_execution_like_content(buffer)
        and has_substantive_answer_text(buffer)
        and not buffer.status.is_terminal
    ):
        return render_view(buffer, text="")
    return build_display_content(buffer)
