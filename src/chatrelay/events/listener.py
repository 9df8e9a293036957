"""Long-lived subscriptions to the agent event streams.

The primary stream carries everything. The optional global stream always
contributes permission and question events, and takes over the rest when
the primary has only carried heartbeats for ``degraded_threshold`` seconds.
Both loops flush all active messages on disconnect and reconnect with a
linear backoff.
"""

from __future__ import annotations

import asyncio
import logging
import os

from chatrelay.agent.api import AgentApi
from chatrelay.bridge.mux import AdapterMux
from chatrelay.events.dispatch import dispatch_event, flush_all
from chatrelay.events.state import BridgeState, ListenerState
from chatrelay.events.types import INTERACTION_EVENT_TYPES, summarize_event, unwrap_event

logger = logging.getLogger(__name__)

RECONNECT_STEP = 5.0
RECONNECT_CAP = 60.0


def reconnect_delay(attempt: int, step: float = RECONNECT_STEP, cap: float = RECONNECT_CAP) -> float:
    return min(step * (attempt + 1), cap)


def _realpath(path: str) -> str:
    try:
        return os.path.realpath(path)
    except OSError:
        return path


def is_same_project_dir(directory: str | None, project_dir: str) -> bool:
    """Events without a directory belong to everyone."""
    if not directory:
        return True
    return directory == project_dir or _realpath(directory) == _realpath(project_dir)


def _is_stale(listener: ListenerState, generation: int) -> bool:
    return listener.should_stop or listener.generation != generation


async def _consume_primary(api: AgentApi, mux: AdapterMux, state: BridgeState, generation: int) -> None:
    listener = state.listener
    attempt = 0
    while not _is_stale(listener, generation):
        try:
            connected = False
            async for raw in api.subscribe():
                if not connected:
                    connected = True
                    attempt = 0
                    logger.info("connected to agent event stream")
                if _is_stale(listener, generation):
                    break
                event = unwrap_event(raw)
                if event is None:
                    logger.debug("unparsed event %r", raw)
                    continue
                if not event.is_heartbeat:
                    listener.last_rich_event_at = state.clock()
                    listener.fallback_announced = False
                logger.info("event observed %s", summarize_event(event))
                await dispatch_event(event, mux, state)
            if _is_stale(listener, generation):
                return
            logger.warning("agent event stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if _is_stale(listener, generation):
                return
            logger.error("agent event stream disconnected: %s", exc)

        await flush_all(mux, state)
        delay = reconnect_delay(attempt)
        attempt += 1
        logger.info("reconnecting to agent event stream in %.0fs (attempt %d)", delay, attempt)
        await asyncio.sleep(delay)


def _should_forward_global(event_type: str, state: BridgeState) -> bool:
    if event_type in INTERACTION_EVENT_TYPES:
        return True
    listener = state.listener
    quiet_for = state.clock() - listener.last_rich_event_at
    if quiet_for < state.degraded_threshold:
        return False
    if not listener.fallback_announced:
        logger.warning(
            "primary event stream looks degraded; forwarding global events after %.0fs of heartbeat-only traffic",
            state.degraded_threshold,
        )
        listener.fallback_announced = True
    return True


async def _consume_global(
    api: AgentApi, mux: AdapterMux, state: BridgeState, project_dir: str, generation: int
) -> None:
    listener = state.listener
    attempt = 0
    while not _is_stale(listener, generation):
        try:
            connected = False
            async for raw in api.subscribe_global():
                if not connected:
                    connected = True
                    attempt = 0
                    logger.info("connected to agent global event stream")
                if _is_stale(listener, generation):
                    break
                directory = raw.get("directory") if isinstance(raw, dict) else None
                if not is_same_project_dir(directory if isinstance(directory, str) else None, project_dir):
                    continue
                event = unwrap_event(raw)
                if event is None or event.is_heartbeat:
                    continue
                if not _should_forward_global(event.type, state):
                    continue
                await dispatch_event(event, mux, state)
            if _is_stale(listener, generation):
                return
            logger.warning("agent global event stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if _is_stale(listener, generation):
                return
            logger.error("agent global event stream disconnected: %s", exc)

        await flush_all(mux, state)
        delay = reconnect_delay(attempt)
        attempt += 1
        logger.info("reconnecting to agent global event stream in %.0fs (attempt %d)", delay, attempt)
        await asyncio.sleep(delay)


def start(api: AgentApi, mux: AdapterMux, state: BridgeState) -> list[asyncio.Task[None]]:
    """Start the subscription loops on the running event loop.

    Calling it again while started is a no-op.
    """
    listener = state.listener
    if listener.is_started:
        logger.debug("listener already started")
        return listener.tasks
    listener.is_started = True
    listener.should_stop = False
    listener.generation += 1
    generation = listener.generation
    listener.last_rich_event_at = state.clock()
    listener.fallback_announced = False

    loop = asyncio.get_running_loop()
    tasks = [loop.create_task(_consume_primary(api, mux, state, generation), name="chatrelay-primary")]
    if getattr(api, "supports_global", False):
        project_dir = _realpath(state.project_dir or os.getcwd())
        tasks.append(
            loop.create_task(_consume_global(api, mux, state, project_dir, generation), name="chatrelay-global")
        )
    listener.tasks = tasks
    logger.info("listener started streams=%d", len(tasks))
    return tasks


def stop(state: BridgeState, *, cancel: bool = False) -> None:
    """Stop the loops and forget all routing, buffer and pending state.

    Loops notice the stop at their next event, even if ``start`` runs
    again before that; pass ``cancel=True`` to also cancel them immediately.
    """
    listener = state.listener
    listener.should_stop = True
    listener.generation += 1
    listener.is_started = False
    tasks = listener.tasks
    listener.tasks = []
    if cancel:
        for task in tasks:
            if not task.done():
                task.cancel()
    state.reset()
    logger.info("listener stopped")
