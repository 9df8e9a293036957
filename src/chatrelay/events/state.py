"""Shared state of one bridge instance.

Every routing, buffer and pending-interrupt map lives on a ``BridgeState``
that is passed explicitly to the dispatcher, the interaction proxy and the
incoming flow. Two bridges in one process simply use two states.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from chatrelay.bridge.buffer import (
    ADAPTER_FLUSH_INTERVALS,
    DEFAULT_FLUSH_INTERVAL,
    BufferStatus,
    MessageBuffer,
    SelectedModel,
)
from chatrelay.events.types import read_str
from chatrelay.proxy.authorization import AUTH_TIMEOUT_SECONDS, PendingAuthorizationState
from chatrelay.proxy.question import QUESTION_TIMEOUT_SECONDS, PendingQuestionState

if TYPE_CHECKING:
    from chatrelay.config import BridgeConfig

logger = logging.getLogger(__name__)

MAX_TRACKED_BUFFERS = 600
BUFFER_SWEEP_BATCH = 120
ROUTE_MISS_WARN_INTERVAL = 30.0
HANDLED_QUESTION_LEDGER_SIZE = 200
DEFAULT_DEGRADED_THRESHOLD = 30.0

V = TypeVar("V")


class RecentMap(Generic[V]):
    """Insertion-ordered map with a size cap and per-entry expiry.

    Oldest entries are evicted first once ``max_size`` is reached; entries
    older than ``ttl`` seconds read as missing.
    """

    def __init__(self, max_size: int, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, V]] = OrderedDict()

    def get(self, key: str) -> V | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: V) -> None:
        self._data.pop(key, None)
        self._data[key] = (self._clock(), value)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()


@dataclass
class SessionRoute:
    """Which chat an agent session belongs to."""

    chat_id: str
    sender_id: str
    adapter_key: str

    @property
    def cache_key(self) -> str:
        return chat_cache_key(self.adapter_key, self.chat_id)


@dataclass
class ListenerState:
    is_started: bool = False
    should_stop: bool = False
    # Bumped by every start and stop; a loop exits once its own generation is stale.
    generation: int = 0
    tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    # Last time the primary stream carried anything but heartbeats.
    last_rich_event_at: float = 0.0
    fallback_announced: bool = False


def chat_cache_key(adapter_key: str, chat_id: str) -> str:
    return f"{adapter_key}:{chat_id}"


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


@dataclass
class BridgeState:
    """All mutable maps of the bridge plus its tunables."""

    listener: ListenerState = field(default_factory=ListenerState)
    routes: dict[str, SessionRoute] = field(default_factory=dict)
    active_msgs: dict[str, str] = field(default_factory=dict)
    roles: dict[str, str] = field(default_factory=dict)
    buffers: dict[str, MessageBuffer] = field(default_factory=dict)
    # chat cache key -> agent session id
    session_cache: dict[str, str] = field(default_factory=dict)
    chat_agent: dict[str, str] = field(default_factory=dict)
    chat_model: dict[str, SelectedModel] = field(default_factory=dict)
    pending_questions: dict[str, PendingQuestionState] = field(default_factory=dict)
    pending_authorizations: dict[str, PendingAuthorizationState] = field(default_factory=dict)
    question_timers: dict[str, asyncio.Task[None]] = field(default_factory=dict, repr=False)
    authorization_timers: dict[str, asyncio.Task[None]] = field(default_factory=dict, repr=False)
    handled_questions: dict[str, OrderedDict[str, None]] = field(default_factory=dict, repr=False)

    flush_intervals: dict[str, float] = field(default_factory=lambda: dict(ADAPTER_FLUSH_INTERVALS))
    default_flush_interval: float = DEFAULT_FLUSH_INTERVAL
    question_timeout: float = QUESTION_TIMEOUT_SECONDS
    auth_timeout: float = AUTH_TIMEOUT_SECONDS
    degraded_threshold: float = DEFAULT_DEGRADED_THRESHOLD
    max_buffers: int = MAX_TRACKED_BUFFERS
    sweep_batch: int = BUFFER_SWEEP_BATCH
    permission_dedupe_window: float = 3.0
    permission_prompt_window: float = 30.0
    project_dir: str | None = None
    default_agent: str | None = "build"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    route_misses: RecentMap[float] = field(init=False, repr=False)
    forwarded_parts: RecentMap[bool] = field(init=False, repr=False)
    permission_events: RecentMap[float] = field(init=False, repr=False)
    permission_prompts: RecentMap[tuple[float, str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.route_misses = RecentMap(4000, 10 * 60, self.clock)
        self.forwarded_parts = RecentMap(8000, 20 * 60, self.clock)
        self.permission_events = RecentMap(6000, self.permission_dedupe_window * 4, self.clock)
        self.permission_prompts = RecentMap(2000, self.permission_prompt_window * 4, self.clock)

    @classmethod
    def from_config(cls, config: BridgeConfig, **overrides: Any) -> BridgeState:
        values: dict[str, Any] = {
            "flush_intervals": dict(config.delivery.adapter_intervals),
            "default_flush_interval": config.delivery.flush_interval,
            "question_timeout": config.interaction.question_timeout,
            "auth_timeout": config.interaction.auth_timeout,
            "permission_dedupe_window": config.interaction.permission_dedupe_window,
            "permission_prompt_window": config.interaction.permission_prompt_window,
            "degraded_threshold": config.listener.degraded_threshold,
            "max_buffers": config.listener.max_buffers,
            "sweep_batch": config.listener.sweep_batch,
            "project_dir": config.agent.directory,
            "default_agent": config.agent.default_agent,
        }
        values.update(overrides)
        return cls(**values)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route_target(self, session_id: str) -> SessionRoute | None:
        return self.routes.get(session_id)

    def bind_route(self, session_id: str, chat_id: str, sender_id: str, adapter_key: str) -> SessionRoute:
        """Record the chat that owns a session. Last writer wins."""
        route = SessionRoute(chat_id=chat_id, sender_id=sender_id, adapter_key=adapter_key)
        self.routes[session_id] = route
        return route

    def hydrate_route(self, session_id: str, metadata: Any) -> bool:
        """Fill a missing route from part metadata.

        Accepts a nested ``route`` object or flat keys. An existing route is
        never overwritten. Returns True when the metadata names a route.
        """
        if not isinstance(metadata, dict):
            return False
        source = metadata.get("route") if isinstance(metadata.get("route"), dict) else metadata
        chat_id = read_str(source, "chat_id", "chatId")
        adapter_key = read_str(source, "adapter_key", "adapterKey", "adapter")
        sender_id = read_str(source, "sender_id", "senderId") or "system"
        if not chat_id or not adapter_key:
            return False
        if session_id not in self.routes:
            self.bind_route(session_id, chat_id, sender_id, adapter_key)
            logger.info("hydrated session route sid=%s adapter=%s chat=%s", session_id, adapter_key, chat_id)
        return True

    def warn_route_miss(self, event_type: str, session_id: str, message_id: str | None = None) -> bool:
        """Warn about an unroutable session, at most once per window."""
        key = f"{event_type}:{session_id}"
        now = self.clock()
        last = self.route_misses.get(key)
        if last is not None and now - last < ROUTE_MISS_WARN_INTERVAL:
            return False
        self.route_misses.set(key, now)
        logger.warning(
            "route miss event=%s sid=%s mid=%s (session has no chat mapping in memory)",
            event_type,
            session_id,
            message_id or "-",
        )
        return True

    # ------------------------------------------------------------------
    # Pending interrupts
    # ------------------------------------------------------------------

    @staticmethod
    def _cancel_timer(timers: dict[str, asyncio.Task[None]], cache_key: str) -> None:
        task = timers.pop(cache_key, None)
        # A timer clearing its own record must not cancel itself mid-callback.
        if task is not None and task is not _current_task() and not task.done():
            task.cancel()

    def _arm_timer(
        self,
        timers: dict[str, asyncio.Task[None]],
        cache_key: str,
        delay: float,
        on_expire: Callable[[], Awaitable[None]],
    ) -> asyncio.Task[None]:
        self._cancel_timer(timers, cache_key)

        async def _fire() -> None:
            await asyncio.sleep(delay)
            try:
                await on_expire()
            except Exception:
                logger.exception("timeout handler failed key=%s", cache_key)

        task = asyncio.get_running_loop().create_task(_fire())
        timers[cache_key] = task
        return task

    def schedule_question_timeout(
        self, cache_key: str, on_expire: Callable[[], Awaitable[None]], delay: float | None = None
    ) -> asyncio.Task[None]:
        return self._arm_timer(self.question_timers, cache_key, self.question_timeout if delay is None else delay, on_expire)

    def schedule_authorization_timeout(
        self, cache_key: str, on_expire: Callable[[], Awaitable[None]], delay: float | None = None
    ) -> asyncio.Task[None]:
        return self._arm_timer(self.authorization_timers, cache_key, self.auth_timeout if delay is None else delay, on_expire)

    def clear_pending_question(self, cache_key: str) -> PendingQuestionState | None:
        """Drop the chat's pending question together with its timer."""
        self._cancel_timer(self.question_timers, cache_key)
        return self.pending_questions.pop(cache_key, None)

    def clear_pending_authorization(self, cache_key: str) -> PendingAuthorizationState | None:
        """Drop the chat's pending authorization together with its timer."""
        self._cancel_timer(self.authorization_timers, cache_key)
        return self.pending_authorizations.pop(cache_key, None)

    def clear_all_pending_questions(self) -> None:
        for key in list(self.question_timers):
            self._cancel_timer(self.question_timers, key)
        self.pending_questions.clear()

    def clear_all_pending_authorizations(self) -> None:
        for key in list(self.authorization_timers):
            self._cancel_timer(self.authorization_timers, key)
        self.pending_authorizations.clear()

    # ------------------------------------------------------------------
    # Handled-question ledger
    # ------------------------------------------------------------------

    def mark_question_call_handled(self, cache_key: str, message_id: str, call_id: str) -> None:
        ledger = self.handled_questions.setdefault(cache_key, OrderedDict())
        token = f"{message_id}::{call_id}"
        ledger.pop(token, None)
        ledger[token] = None
        while len(ledger) > HANDLED_QUESTION_LEDGER_SIZE:
            ledger.popitem(last=False)

    def is_question_call_handled(self, cache_key: str, message_id: str, call_id: str) -> bool:
        ledger = self.handled_questions.get(cache_key)
        return ledger is not None and f"{message_id}::{call_id}" in ledger

    def clear_handled_questions(self, cache_key: str) -> None:
        self.handled_questions.pop(cache_key, None)

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def prune_buffers(self) -> int:
        """Evict old finished buffers once more than ``max_buffers`` are tracked."""
        if len(self.buffers) <= self.max_buffers:
            return 0
        active = set(self.active_msgs.values())
        removed = 0
        for message_id, buffer in list(self.buffers.items()):
            if len(self.buffers) <= self.max_buffers or removed >= self.sweep_batch:
                break
            if message_id in active or buffer.status is BufferStatus.STREAMING:
                continue
            del self.buffers[message_id]
            self.roles.pop(message_id, None)
            removed += 1
        if removed:
            logger.debug("pruned message buffers removed=%d remaining=%d", removed, len(self.buffers))
        return removed

    def reset(self) -> None:
        """Forget everything; used when the listener stops."""
        self.routes.clear()
        self.active_msgs.clear()
        self.roles.clear()
        self.buffers.clear()
        self.session_cache.clear()
        self.chat_agent.clear()
        self.chat_model.clear()
        self.clear_all_pending_questions()
        self.clear_all_pending_authorizations()
        self.handled_questions.clear()
        self.route_misses.clear()
        self.forwarded_parts.clear()
        self.permission_events.clear()
        self.permission_prompts.clear()
