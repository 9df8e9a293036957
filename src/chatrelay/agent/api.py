"""What the bridge needs from the agent backend."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from chatrelay.bridge.buffer import SelectedModel


def build_prompt_body(
    parts: list[dict[str, Any]], agent: str | None = None, model: SelectedModel | None = None
) -> dict[str, Any]:
    """Request body of a prompt; ``parts`` are backend text/file part dicts."""
    body: dict[str, Any] = {"parts": parts}
    if agent:
        body["agent"] = agent
    if model:
        body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}
    return body


@runtime_checkable
class AgentApi(Protocol):
    """Agent session backend.

    ``reply_permission`` and ``reply_question`` may raise
    ``EndpointUnavailable``; callers then fall back to
    ``respond_permission`` and to a resume prompt respectively.
    """

    @property
    def supports_global(self) -> bool:
        """Whether ``subscribe_global`` is served."""
        ...

    def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw events of the primary stream until it disconnects."""
        ...

    def subscribe_global(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw ``{directory, payload}`` events of the global stream."""
        ...

    async def create_session(self, title: str) -> str:
        """Create a session and return its id."""
        ...

    async def prompt(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        agent: str | None = None,
        model: SelectedModel | None = None,
    ) -> None:
        """Submit a prompt; permission-like failures surface as exceptions."""
        ...

    async def reply_permission(self, request_id: str, reply: str) -> None: ...

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> None: ...

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> None: ...
