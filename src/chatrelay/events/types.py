"""Agent event model.

The backend's event schema evolves independently of the bridge, so events
are kept as a type string plus a raw ``properties`` dict. ``EventType``
enumerates the types the dispatcher acts on; anything else falls back to
the raw string and is logged, never raised.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from chatrelay.bridge.buffer import KNOWN_PART_TYPES


class EventType(enum.Enum):
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_REMOVED = "message.removed"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_PART_REMOVED = "message.part.removed"
    SESSION_ERROR = "session.error"
    SESSION_IDLE = "session.idle"
    SESSION_STATUS = "session.status"
    PERMISSION_UPDATED = "permission.updated"
    PERMISSION_ASKED = "permission.asked"
    PERMISSION_REPLIED = "permission.replied"
    QUESTION_ASKED = "question.asked"
    QUESTION_REPLIED = "question.replied"
    QUESTION_REJECTED = "question.rejected"
    COMMAND_EXECUTED = "command.executed"
    SERVER_CONNECTED = "server.connected"
    SERVER_HEARTBEAT = "server.heartbeat"


# Catalogued upstream types the dispatcher deliberately ignores.
KNOWN_EVENT_TYPES = frozenset(
    {e.value for e in EventType}
    | {
        "server.instance.disposed",
        "installation.updated",
        "installation.update-available",
        "lsp.client.diagnostics",
        "lsp.updated",
        "session.compacted",
        "session.created",
        "session.updated",
        "session.deleted",
        "session.diff",
        "file.edited",
        "file.watcher.updated",
        "todo.updated",
        "vcs.branch.updated",
        "tui.prompt.append",
        "tui.command.execute",
        "tui.toast.show",
        "pty.created",
        "pty.updated",
        "pty.exited",
        "pty.deleted",
    }
)

INTERACTION_EVENT_TYPES = frozenset(
    {
        EventType.PERMISSION_UPDATED.value,
        EventType.PERMISSION_ASKED.value,
        EventType.PERMISSION_REPLIED.value,
        EventType.QUESTION_ASKED.value,
        EventType.QUESTION_REPLIED.value,
        EventType.QUESTION_REJECTED.value,
    }
)

HEARTBEAT_EVENT_TYPES = frozenset({EventType.SERVER_HEARTBEAT.value, EventType.SERVER_CONNECTED.value})

__all__ = [
    "BridgeEvent",
    "EventType",
    "HEARTBEAT_EVENT_TYPES",
    "INTERACTION_EVENT_TYPES",
    "KNOWN_EVENT_TYPES",
    "KNOWN_PART_TYPES",
    "as_dict",
    "read_str",
    "summarize_event",
    "unwrap_event",
]


@dataclass
class BridgeEvent:
    """One upstream event."""

    type: str
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> EventType | None:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    @property
    def is_heartbeat(self) -> bool:
        return self.type in HEARTBEAT_EVENT_TYPES


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def read_str(obj: Any, *keys: str) -> str | None:
    """First non-empty string value among ``keys``."""
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def unwrap_event(raw: Any) -> BridgeEvent | None:
    """Accept ``{type, properties}`` or ``{payload: {type, properties}}``."""
    if not isinstance(raw, dict):
        return None
    candidate = raw if isinstance(raw.get("type"), str) else as_dict(raw.get("payload"))
    event_type = candidate.get("type")
    if not isinstance(event_type, str):
        return None
    return BridgeEvent(type=event_type, properties=as_dict(candidate.get("properties")))


def summarize_event(event: BridgeEvent) -> dict[str, Any]:
    """Flat view of the ids an event carries, for log lines."""
    props = event.properties
    info = as_dict(props.get("info"))
    part = as_dict(props.get("part"))
    delta = props.get("delta")
    return {
        "type": event.type,
        "session_id": read_str(props, "sessionID") or read_str(info, "sessionID") or read_str(part, "sessionID"),
        "message_id": read_str(info, "id") or read_str(part, "messageID"),
        "role": read_str(info, "role"),
        "part_type": read_str(part, "type"),
        "part_id": read_str(part, "id"),
        "has_delta": isinstance(delta, str) and bool(delta),
        "has_part_metadata": isinstance(part.get("metadata"), dict),
    }
