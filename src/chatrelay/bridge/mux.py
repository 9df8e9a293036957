"""Chat platform adapter protocol and registry."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class BridgeAdapter(Protocol):
    """What the bridge needs from a chat platform.

    ``add_reaction``, ``remove_reaction`` and ``send_local_file`` are
    optional; look them up with ``getattr`` before calling.
    """

    async def send_message(self, chat_id: str, text: str) -> str | None:
        """Send a new message. Returns its platform id, or None on failure."""
        ...

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        """Replace the content of an already sent message."""
        ...


class AdapterMux:
    """Adapter registry keyed by adapter key (``"telegram"``, ``"console"`` ...).

    A chat is bound to one adapter through its session route; there is no
    failover between adapters.
    """

    def __init__(self, adapters: dict[str, BridgeAdapter] | None = None) -> None:
        self._adapters: dict[str, BridgeAdapter] = dict(adapters or {})

    def register(self, key: str, adapter: BridgeAdapter) -> None:
        if key in self._adapters:
            logger.warning("adapter %s replaced", key)
        self._adapters[key] = adapter

    def get(self, key: str | None) -> BridgeAdapter | None:
        if not key:
            return None
        return self._adapters.get(key)

    def keys(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, key: object) -> bool:
        return key in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)
