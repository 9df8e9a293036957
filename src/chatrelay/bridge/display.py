"""Render a message buffer as a sectioned markdown document."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

from chatrelay.bridge.buffer import BufferStatus, MessageBuffer, ToolCallState

MAX_REASONING_CHARS = 1200
MAX_TOOL_DETAIL_CHARS = 80

TOOL_STATUS_ICONS = {
    "pending": "⏳",
    "running": "🔄",
    "completed": "✅",
    "error": "❌",
}

STATUS_LABELS = {
    BufferStatus.STREAMING: ("⏳", "Working"),
    BufferStatus.DONE: ("✅", "Done"),
    BufferStatus.ABORTED: ("⏹️", "Aborted"),
    BufferStatus.ERROR: ("❌", "Error"),
}

# Finish reasons that add nothing to the status label.
QUIET_NOTES = frozenset({"stop", "completed", "idle", "end_turn", "step-finish"})


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "…" + text[-limit:]


def _tool_detail(tool: ToolCallState) -> str:
    if tool.title:
        return _clip(tool.title, MAX_TOOL_DETAIL_CHARS)
    if tool.input:
        # sort_keys keeps the render independent of input key order
        return _clip(json.dumps(tool.input, ensure_ascii=False, sort_keys=True), MAX_TOOL_DETAIL_CHARS)
    return ""


def _render_tools(tools: dict[str, ToolCallState]) -> str:
    lines = []
    for tool in tools.values():
        icon = TOOL_STATUS_ICONS.get(tool.status, "•")
        detail = _tool_detail(tool)
        line = f"- {icon} `{tool.name}`"
        if detail:
            line += f" {detail}"
        if tool.status == "error" and tool.error:
            line += f" ({_clip(tool.error, MAX_TOOL_DETAIL_CHARS)})"
        lines.append(line)
    return "\n".join(lines)


def _render_status(buffer: MessageBuffer) -> str:
    icon, label = STATUS_LABELS[buffer.status]
    line = f"{icon} {label}"
    note = buffer.status_note.strip()
    if note and note not in QUIET_NOTES and buffer.status is not BufferStatus.ERROR:
        line += f" · {note}"

    meta = []
    if buffer.selected_agent:
        meta.append(f"agent: {buffer.selected_agent}")
    if buffer.selected_model:
        meta.append(f"model: {buffer.selected_model.label}")
    if meta:
        line += "\n" + " | ".join(meta)
    return line


def build_display_content(buffer: MessageBuffer) -> str:
    """Pure render of a buffer; equal content always yields equal output."""
    sections: list[str] = []
    text = buffer.text.strip()

    if buffer.is_command and text:
        sections.append(f"## Command\n{text}")

    reasoning = buffer.reasoning.strip()
    if reasoning:
        sections.append(f"## Thinking\n{_tail(reasoning, MAX_REASONING_CHARS)}")

    if buffer.tools:
        sections.append(f"## Tools\n{_render_tools(buffer.tools)}")

    if buffer.files:
        files = "\n".join(f"- {f.filename}" for f in buffer.files)
        sections.append(f"## Files\n{files}")

    if text and not buffer.is_command:
        sections.append(f"## Answer\n{text}")

    if buffer.status is BufferStatus.ERROR:
        sections.append(f"## Error\n{buffer.status_note.strip() or 'error'}")

    sections.append(f"## Status\n{_render_status(buffer)}")
    return "\n\n".join(sections)


def render_view(buffer: MessageBuffer, **overrides: Any) -> str:
    """Render a copy of ``buffer`` with some fields replaced."""
    return build_display_content(replace(buffer, **overrides))
