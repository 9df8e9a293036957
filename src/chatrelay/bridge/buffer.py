"""Per-message accumulation of streamed agent output.

One ``MessageBuffer`` exists per assistant message id. Part-update events
mutate it additively; the display builder renders it; the delivery layer
records which platform message currently shows it.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 1.0
# Telegram rate-limits edits of the same message much harder than the others.
ADAPTER_FLUSH_INTERVALS: dict[str, float] = {"telegram": 2.5}

KNOWN_PART_TYPES = frozenset(
    {
        "text",
        "subtask",
        "reasoning",
        "file",
        "tool",
        "step-start",
        "step-finish",
        "snapshot",
        "patch",
        "agent",
        "retry",
        "compaction",
    }
)


class BufferStatus(enum.Enum):
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not BufferStatus.STREAMING


@dataclass
class SelectedModel:
    """Model chosen for a chat, shown as display metadata."""

    provider_id: str
    model_id: str
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.model_id


@dataclass
class ToolCallState:
    """Latest known state of one tool call."""

    call_id: str
    name: str
    status: str = "pending"
    title: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    error: str = ""


@dataclass(frozen=True)
class FileAttachment:
    filename: str
    mime: str = ""
    url: str = ""


@dataclass
class MessageBuffer:
    """Accumulated content and delivery bookkeeping of one assistant message."""

    message_id: str
    text: str = ""
    reasoning: str = ""
    tools: dict[str, ToolCallState] = field(default_factory=dict)
    files: list[FileAttachment] = field(default_factory=list)
    status: BufferStatus = BufferStatus.STREAMING
    status_note: str = ""
    platform_msg_id: str | None = None
    last_display_hash: str = ""
    last_update_time: float = 0.0
    selected_agent: str | None = None
    selected_model: SelectedModel | None = None
    is_command: bool = False
    # Set when platform_msg_id was inherited from an earlier message of the turn.
    execution_carried: bool = False
    # part id -> characters already appended, so snapshots and deltas never double up
    part_offsets: dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.reasoning or self.tools)


def get_or_init_buffer(buffers: dict[str, MessageBuffer], message_id: str) -> MessageBuffer:
    buffer = buffers.get(message_id)
    if buffer is None:
        buffer = MessageBuffer(message_id=message_id)
        buffers[message_id] = buffer
    return buffer


def simple_hash(text: str) -> str:
    """Content fingerprint used to skip no-op edits."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _append_stream(buffer: MessageBuffer, attr: str, part: dict[str, Any], delta: str | None) -> None:
    part_id = str(part.get("id") or attr)
    current: str = getattr(buffer, attr)
    seen = buffer.part_offsets.get(part_id)

    if isinstance(delta, str) and delta:
        chunk = delta
    else:
        full = part.get("text")
        if not isinstance(full, str):
            return
        chunk = full[seen or 0 :]
    if not chunk:
        return

    # A new part of the same kind starts a new paragraph.
    if seen is None and current and not current.endswith("\n"):
        current += "\n\n"
    setattr(buffer, attr, current + chunk)
    buffer.part_offsets[part_id] = (seen or 0) + len(chunk)


def _apply_tool_part(buffer: MessageBuffer, part: dict[str, Any]) -> None:
    call_id = str(part.get("callID") or part.get("id") or "")
    if not call_id:
        return
    state = part.get("state") if isinstance(part.get("state"), dict) else {}
    name = str(part.get("tool") or "tool")

    tool = buffer.tools.get(call_id)
    if tool is None:
        tool = ToolCallState(call_id=call_id, name=name)
        buffer.tools[call_id] = tool
    tool.name = name
    if isinstance(state.get("status"), str):
        tool.status = state["status"]
    if isinstance(state.get("title"), str):
        tool.title = state["title"]
    if isinstance(state.get("input"), dict):
        tool.input = dict(state["input"])
    if isinstance(state.get("output"), str):
        tool.output = state["output"]
    if isinstance(state.get("error"), str):
        tool.error = state["error"]


def _apply_file_part(buffer: MessageBuffer, part: dict[str, Any]) -> None:
    url = part.get("url") if isinstance(part.get("url"), str) else ""
    filename = part.get("filename") if isinstance(part.get("filename"), str) else ""
    if not filename and not url:
        return
    attachment = FileAttachment(
        filename=filename or url.rsplit("/", 1)[-1],
        mime=part.get("mime") if isinstance(part.get("mime"), str) else "",
        url=url,
    )
    if attachment not in buffer.files:
        buffer.files.append(attachment)


def apply_part_to_buffer(buffer: MessageBuffer, part: dict[str, Any], delta: str | None = None) -> None:
    """Merge one part update into the buffer.

    Text and reasoning parts append their delta (or the unseen tail of the
    part's full text when no delta is sent). Tool parts upsert by call id.
    Unrecognized part types are ignored.
    """
    part_type = part.get("type")
    if part_type == "text":
        _append_stream(buffer, "text", part, delta)
    elif part_type == "reasoning":
        _append_stream(buffer, "reasoning", part, delta)
    elif part_type == "tool":
        _apply_tool_part(buffer, part)
    elif part_type == "file":
        _apply_file_part(buffer, part)
    elif part_type == "step-finish":
        reason = part.get("reason")
        if isinstance(reason, str) and reason:
            buffer.status_note = reason
    elif part_type == "retry":
        if buffer.status is BufferStatus.STREAMING:
            buffer.status_note = "retry"
    elif part_type not in KNOWN_PART_TYPES:
        logger.debug("part ignored mid=%s type=%s", buffer.message_id, part_type)


def mark_status(
    buffers: dict[str, MessageBuffer],
    message_id: str,
    status: BufferStatus,
    note: str | None = None,
) -> MessageBuffer:
    """Set a buffer's status, creating the buffer when needed.

    A terminal status is never downgraded back to ``STREAMING``.
    """
    buffer = get_or_init_buffer(buffers, message_id)
    if buffer.status.is_terminal and status is BufferStatus.STREAMING:
        logger.debug("status downgrade ignored mid=%s status=%s", message_id, buffer.status.value)
        return buffer
    buffer.status = status
    if note is not None:
        buffer.status_note = note
    return buffer


def get_update_interval(
    adapter_key: str | None,
    intervals: Mapping[str, float] | None = None,
    default: float = DEFAULT_FLUSH_INTERVAL,
) -> float:
    table = ADAPTER_FLUSH_INTERVALS if intervals is None else intervals
    if adapter_key and adapter_key in table:
        return table[adapter_key]
    return default


def should_flush_now(
    buffer: MessageBuffer,
    adapter_key: str | None = None,
    *,
    intervals: Mapping[str, float] | None = None,
    default_interval: float = DEFAULT_FLUSH_INTERVAL,
    now: float | None = None,
) -> bool:
    """Throttle: True when enough time passed since the last delivery."""
    if buffer.status.is_terminal:
        return True
    current = time.monotonic() if now is None else now
    interval = get_update_interval(adapter_key, intervals, default_interval)
    return current - buffer.last_update_time >= interval
