"""Message buffers, display rendering and delivery to chat adapters."""

from chatrelay.bridge.buffer import (
    BufferStatus,
    FileAttachment,
    MessageBuffer,
    SelectedModel,
    ToolCallState,
    apply_part_to_buffer,
    get_or_init_buffer,
    mark_status,
    should_flush_now,
)
from chatrelay.bridge.delivery import deliver, flush_message, safe_edit_with_retry, send_notice
from chatrelay.bridge.display import build_display_content
from chatrelay.bridge.execution import build_platform_display
from chatrelay.bridge.mux import AdapterMux, BridgeAdapter

__all__ = [
    "AdapterMux",
    "BridgeAdapter",
    "BufferStatus",
    "FileAttachment",
    "MessageBuffer",
    "SelectedModel",
    "ToolCallState",
    "apply_part_to_buffer",
    "build_display_content",
    "build_platform_display",
    "deliver",
    "flush_message",
    "get_or_init_buffer",
    "mark_status",
    "safe_edit_with_retry",
    "send_notice",
    "should_flush_now",
]
