"""Send/edit orchestration against platform adapters."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from chatrelay.bridge.buffer import BufferStatus, MessageBuffer, simple_hash
from chatrelay.bridge.mux import AdapterMux, BridgeAdapter
from chatrelay.errors import DeliveryError

if TYPE_CHECKING:
    from chatrelay.events.state import SessionRoute

logger = logging.getLogger(__name__)

DisplayBuilder = Callable[[MessageBuffer], str]


@retry(
    retry=retry_if_exception_type((DeliveryError, ConnectionError, TimeoutError, OSError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _edit_with_retry(adapter: BridgeAdapter, chat_id: str, message_id: str, text: str) -> str:
    """Edit once; a False return counts as a transient failure."""
    ok = await adapter.edit_message(chat_id, message_id, text)
    if not ok:
        raise DeliveryError(f"edit rejected chat={chat_id} msg={message_id}")
    return message_id


async def safe_edit_with_retry(
    adapter: BridgeAdapter, chat_id: str, message_id: str, text: str
) -> str | None:
    """Edit with bounded retries.

    Returns the platform message id on success and None once retries are
    exhausted. Callers must not assume the id survives a failed edit.
    """
    try:
        return await _edit_with_retry(adapter, chat_id, message_id, text)
    except Exception as exc:
        logger.warning("edit failed chat=%s msg=%s len=%d: %s", chat_id, message_id, len(text), exc)
        return None


async def send_notice(adapter: BridgeAdapter, chat_id: str, text: str) -> str | None:
    """Send a standalone message (prompt, status line); failures only log."""
    try:
        return await adapter.send_message(chat_id, text)
    except Exception as exc:
        logger.warning("notice send failed chat=%s: %s", chat_id, exc)
        return None


async def deliver(adapter: BridgeAdapter, chat_id: str, buffer: MessageBuffer, display: str) -> bool:
    """Send or edit ``display`` for ``buffer``.

    Skips the call when the platform message already shows this exact
    content. The buffer's platform id and hash change only on success.
    Returns True when a network call succeeded.
    """
    digest = simple_hash(display)
    if buffer.platform_msg_id and digest == buffer.last_display_hash:
        logger.debug("skip delivery mid=%s reason=same-hash", buffer.message_id)
        return False

    if not buffer.platform_msg_id:
        try:
            sent = await adapter.send_message(chat_id, display)
        except Exception as exc:
            logger.warning("send failed chat=%s mid=%s: %s", chat_id, buffer.message_id, exc)
            return False
        if not sent:
            logger.warning("send returned no id chat=%s mid=%s", chat_id, buffer.message_id)
            return False
        logger.info("send-new chat=%s mid=%s msg=%s tools=%d", chat_id, buffer.message_id, sent, len(buffer.tools))
        buffer.platform_msg_id = sent
        buffer.last_display_hash = digest
        return True

    edited = await safe_edit_with_retry(adapter, chat_id, buffer.platform_msg_id, display)
    if edited is None:
        return False
    buffer.platform_msg_id = edited
    buffer.last_display_hash = digest
    return True


async def flush_message(
    adapter: BridgeAdapter,
    chat_id: str,
    message_id: str,
    buffers: Mapping[str, MessageBuffer],
    build_display: DisplayBuilder,
    *,
    force: bool = False,
    now: float | None = None,
) -> bool:
    """Render one buffer and deliver it immediately.

    Empty streaming buffers are skipped; error and aborted buffers are
    always delivered so the chat sees the failure. ``now`` stamps
    ``last_update_time`` and must come from the same clock the throttle uses.
    """
    buffer = buffers.get(message_id)
    if buffer is None:
        return False
    failed = buffer.status in (BufferStatus.ERROR, BufferStatus.ABORTED)
    if not (buffer.has_content or failed or (force and buffer.files)):
        logger.debug("skip flush mid=%s reason=empty", message_id)
        return False
    buffer.last_update_time = time.monotonic() if now is None else now
    return await deliver(adapter, chat_id, buffer, build_display(buffer))


async def flush_all(
    mux: AdapterMux,
    active_msgs: Mapping[str, str],
    routes: Mapping[str, SessionRoute],
    buffers: Mapping[str, MessageBuffer],
    build_display: DisplayBuilder,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Flush the active buffer of every routed session. Returns deliveries made."""
    delivered = 0
    for session_id, message_id in list(active_msgs.items()):
        route = routes.get(session_id)
        if route is None:
            continue
        adapter = mux.get(route.adapter_key)
        if adapter is None:
            continue
        try:
            if await flush_message(
                adapter, route.chat_id, message_id, buffers, build_display, force=True, now=clock()
            ):
                delivered += 1
        except Exception:
            logger.exception("flush failed sid=%s mid=%s", session_id, message_id)
    if delivered:
        logger.info("flush-all delivered=%d", delivered)
    return delivered
