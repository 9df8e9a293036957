"""Agent event types, bridge state, dispatch and stream listeners."""

from chatrelay.events.state import BridgeState, SessionRoute, chat_cache_key
from chatrelay.events.types import BridgeEvent, EventType, unwrap_event

__all__ = [
    "BridgeEvent",
    "BridgeState",
    "EventType",
    "SessionRoute",
    "chat_cache_key",
    "unwrap_event",
]
