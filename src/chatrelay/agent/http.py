"""HTTP + Server-Sent Events client for the agent server."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from chatrelay.agent.api import build_prompt_body
from chatrelay.bridge.buffer import SelectedModel
from chatrelay.errors import (
    AgentApiError,
    EndpointUnavailable,
    SessionCreateError,
    extract_error_message,
    unwrap_envelope,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_STATUS = frozenset({404, 405, 501})


@retry(
    retry=retry_if_exception_type((httpx.TransportError, ConnectionError, TimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _send_with_retry(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Send a request with retry on transport errors."""
    return await client.request(method, url, **kwargs)


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def check_response(response: httpx.Response, *, optional: bool = False) -> Any:
    """Decode a JSON response or raise ``AgentApiError``.

    ``optional`` endpoints answering 404/405/501 raise ``EndpointUnavailable``.
    """
    payload = _json_or_none(response)
    if response.status_code < 400:
        return payload
    message = extract_error_message(payload) or response.reason_phrase or f"HTTP {response.status_code}"
    if optional and response.status_code in UNAVAILABLE_STATUS:
        raise EndpointUnavailable(f"{response.request.url.path}: {message}", response.status_code, payload)
    raise AgentApiError(message, response.status_code, payload)


async def iter_sse(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Parse ``data:`` lines of an event stream into JSON objects.

    Multi-line data fields are joined; malformed payloads are skipped.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line or not data_lines:
            continue
        raw = "\n".join(data_lines)
        data_lines = []
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("skipping malformed sse payload %r", raw[:200])
            continue
        if isinstance(event, dict):
            yield event
    if data_lines:
        try:
            event = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            yield event


class HttpAgentApi:
    """``AgentApi`` over the agent server's HTTP interface."""

    def __init__(
        self,
        base_url: str,
        *,
        directory: str | None = None,
        timeout: float = 30.0,
        supports_global: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self._supports_global = supports_global
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @property
    def supports_global(self) -> bool:
        return self._supports_global

    def _params(self) -> dict[str, str]:
        return {"directory": self.directory} if self.directory else {}

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Event streams
    # ------------------------------------------------------------------

    async def _stream(self, path: str) -> AsyncIterator[dict[str, Any]]:
        # Streams stay open indefinitely; only the connect phase is bounded.
        timeout = httpx.Timeout(connect=10.0, read=None, write=10.0, pool=10.0)
        async with self._client.stream(
            "GET", path, params=self._params(), headers={"Accept": "text/event-stream"}, timeout=timeout
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                check_response(response, optional=path.startswith("/global"))
            async for event in iter_sse(response):
                yield event

    async def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        async for event in self._stream("/event"):
            yield event

    async def subscribe_global(self) -> AsyncIterator[dict[str, Any]]:
        async for event in self._stream("/global/event"):
            yield event

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, title: str) -> str:
        response = await _send_with_retry(self._client, "POST", "/session", params=self._params(), json={"title": title})
        data = unwrap_envelope(check_response(response))
        session_id = None
        if isinstance(data, dict):
            session_id = data.get("id")
            if not isinstance(session_id, str):
                nested = unwrap_envelope(data.get("session"))
                session_id = nested.get("id") if isinstance(nested, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise SessionCreateError("session create returned no id", response.status_code, data)
        logger.info("session created id=%s title=%s", session_id, title)
        return session_id

    async def prompt(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        agent: str | None = None,
        model: SelectedModel | None = None,
    ) -> None:
        # A busy or blocked session surfaces here as an error response.
        response = await self._client.post(
            f"/session/{session_id}/message",
            params=self._params(),
            json=build_prompt_body(parts, agent, model),
            timeout=httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0),
        )
        check_response(response)

    # ------------------------------------------------------------------
    # Interrupt replies
    # ------------------------------------------------------------------

    async def reply_permission(self, request_id: str, reply: str) -> None:
        response = await _send_with_retry(
            self._client, "POST", f"/permission/{request_id}/reply", params=self._params(), json={"reply": reply}
        )
        check_response(response, optional=True)

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> None:
        resp = await _send_with_retry(
            self._client,
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            params=self._params(),
            json={"response": response},
        )
        check_response(resp)

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> None:
        response = await _send_with_retry(
            self._client, "POST", f"/question/{request_id}/reply", params=self._params(), json={"answers": answers}
        )
        check_response(response, optional=True)
