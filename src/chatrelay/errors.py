"""Exceptions raised across the bridge."""

from __future__ import annotations

from typing import Any


class DeliveryError(Exception):
    """A platform adapter rejected a send or edit."""


class AgentApiError(Exception):
    """Call to the agent backend failed."""

    def __init__(self, message: str, status_code: int | None = None, payload: object = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class EndpointUnavailable(AgentApiError):
    """Optional endpoint is not served by this backend; callers fall back."""


class SessionCreateError(AgentApiError):
    """The backend returned no session id."""


# ---------------------------------------------------------------------------
# Error payload helpers
# ---------------------------------------------------------------------------

ENVELOPE_KEYS = ("data", "result", "payload", "response", "body")
MAX_USER_ERROR_CHARS = 200


def _read(value: Any, *keys: str) -> str | None:
    if not isinstance(value, dict):
        return None
    for key in keys:
        candidate = value.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def unwrap_envelope(value: Any, max_depth: int = 4) -> Any:
    """Peel ``{"data": {...}}``-style wrappers off an API response."""
    current = value
    for _ in range(max_depth):
        if not isinstance(current, dict):
            break
        for key in ENVELOPE_KEYS:
            if current.get(key) is not None:
                current = current[key]
                break
        else:
            break
    return current


def _record(value: Any) -> dict[str, Any] | None:
    unwrapped = unwrap_envelope(value)
    return unwrapped if isinstance(unwrapped, dict) else None


def extract_error_message(err: Any) -> str | None:
    """Best human-readable message from an error of unknown shape."""
    if isinstance(err, str):
        return err.strip() or None
    if isinstance(err, AgentApiError) and err.payload is not None:
        found = extract_error_message(err.payload)
        if found:
            return found
    if isinstance(err, BaseException):
        return str(err).strip() or None
    if not isinstance(err, dict):
        return None

    direct = _read(err, "message")
    if direct:
        return direct

    found = _read(_record(err.get("data")), "message", "msg", "error")
    if found:
        return found

    response = err.get("response")
    if isinstance(response, dict):
        found = _read(response, "message", "statusText")
        if found:
            return found
        found = _read(_record(response.get("data")), "message", "msg", "error")
        if found:
            return found

    return _read(_record(err.get("error")), "message", "msg")


def format_user_error(err: Any) -> str:
    """One short line suitable for a chat message."""
    message = extract_error_message(err)
    if not message:
        message = type(err).__name__ if isinstance(err, BaseException) else "unknown error"
    first_line = message.strip().splitlines()[0] if message.strip() else message
    return first_line[:MAX_USER_ERROR_CHARS]
