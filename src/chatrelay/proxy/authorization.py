"""Authorization protocol: hold a chat while the agent waits for approval.

Two modes share one pending record per chat:

``permission_request``
    The agent raised a permission event. The user picks allow once,
    allow always, or reject.
``session_blocked``
    Submitting a prompt failed with an error that looks like a pending
    approval or a busy session. The prompt parts are kept so they can be
    resubmitted once the user says the session is unblocked, or the user
    moves on to a new session.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any

from chatrelay.errors import extract_error_message

AUTH_TIMEOUT_SECONDS = 15 * 60

_QUOTE_CHARS = re.compile(r"[`'\"“”‘’]")

# Substrings of backend error messages that suggest the session is waiting
# for approval or is still busy with an earlier prompt.
PERMISSION_BLOCKED_MARKERS = (
    "permission",
    "approval",
    "approve",
    "consent",
    "authorize",
    "confirm",
    "busy",
    "not idle",
    "already running",
    "in progress",
    "会话忙",
    "需要权限",
    "等待授权",
    "等待确认",
)


class AuthorizationMode(enum.Enum):
    PERMISSION_REQUEST = "permission_request"
    SESSION_BLOCKED = "session_blocked"


class AuthorizationDecision(enum.Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    REJECT = "reject_permission"
    RESUME = "resume_blocked"
    NEW_SESSION = "start_new_session"
    UNKNOWN = "unknown"
    EMPTY = "empty"

    @property
    def is_permission_choice(self) -> bool:
        return self in (AuthorizationDecision.ALLOW_ONCE, AuthorizationDecision.ALLOW_ALWAYS, AuthorizationDecision.REJECT)

    @property
    def response(self) -> str:
        """Wire value for the permission reply endpoints."""
        return {
            AuthorizationDecision.ALLOW_ONCE: "once",
            AuthorizationDecision.ALLOW_ALWAYS: "always",
            AuthorizationDecision.REJECT: "reject",
        }[self]


_REPLY_TOKENS: list[tuple[AuthorizationDecision, frozenset[str]]] = [
    (AuthorizationDecision.ALLOW_ONCE, frozenset({"1", "once", "allow once", "允许一次", "本次允许", "单次允许"})),
    (AuthorizationDecision.ALLOW_ALWAYS, frozenset({"2", "always", "always allow", "始终允许", "总是允许", "永久允许"})),
    (AuthorizationDecision.REJECT, frozenset({"3", "reject", "deny", "拒绝", "不允许"})),
    (
        AuthorizationDecision.RESUME,
        frozenset(
            {
                "y", "yes", "ok", "okay", "continue", "resume",
                "继续", "继续原会话", "已授权", "授权好了", "授权完成", "好了", "完成",
            }
        ),
    ),
    (
        AuthorizationDecision.NEW_SESSION,
        frozenset(
            {
                "new", "new session", "new topic", "skip", "start new",
                "新会话", "新话题", "跳过", "先聊别的", "换个话题",
            }
        ),
    ),
]


@dataclass
class PendingAuthorizationState:
    mode: AuthorizationMode
    key: str
    adapter_key: str
    chat_id: str
    sender_id: str
    session_id: str
    created_at: float
    due_at: float
    blocked_reason: str = ""
    source: str = "bridge.incoming"
    permission_id: str | None = None
    permission_type: str | None = None
    permission_title: str | None = None
    permission_pattern: str | list[str] | None = None
    deferred_parts: list[dict[str, Any]] = field(default_factory=list)


def _normalize(value: str) -> str:
    return _QUOTE_CHARS.sub("", (value or "").strip().lower())


def parse_authorization_reply(value: str) -> AuthorizationDecision:
    token = _normalize(value)
    if not token:
        return AuthorizationDecision.EMPTY
    for decision, tokens in _REPLY_TOKENS:
        if token in tokens:
            return decision
    return AuthorizationDecision.UNKNOWN


def resolve_decision(value: str, mode: AuthorizationMode) -> AuthorizationDecision:
    """Parse a reply and fold the 3-way choices onto the 2-way blocked prompt.

    In ``session_blocked`` mode option 1 means resume and option 2 (or a
    reject) means start over in a new session.
    """
    decision = parse_authorization_reply(value)
    if mode is AuthorizationMode.SESSION_BLOCKED:
        if decision is AuthorizationDecision.ALLOW_ONCE:
            return AuthorizationDecision.RESUME
        if decision in (AuthorizationDecision.ALLOW_ALWAYS, AuthorizationDecision.REJECT):
            return AuthorizationDecision.NEW_SESSION
    return decision


def is_likely_permission_blocked_error(err: Any) -> bool:
    """Best-effort guess from the error text; expect false negatives."""
    message = (extract_error_message(err) or "").lower()
    if not message:
        return False
    return any(marker in message for marker in PERMISSION_BLOCKED_MARKERS)


def pattern_text(pattern: str | list[str] | None, sep: str = ", ") -> str:
    if isinstance(pattern, list):
        return sep.join(str(p) for p in pattern)
    return pattern or ""


def permission_signature(
    permission_type: str | None,
    title: str | None,
    pattern: str | list[str] | None,
    call_id: str | None,
) -> str:
    return "::".join([permission_type or "", title or "", pattern_text(pattern, "|"), call_id or ""])


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_authorization_prompt(state: PendingAuthorizationState) -> str:
    lines = ["## Question"]
    if state.mode is AuthorizationMode.PERMISSION_REQUEST:
        lines.append("The agent is asking for permission. Choose:")
        if state.permission_title:
            lines.append(f"Permission: {state.permission_title}")
        if state.permission_type:
            lines.append(f"Type: {state.permission_type}")
        scope = pattern_text(state.permission_pattern)
        if scope:
            lines.append(f"Scope: {scope}")
        lines.extend(
            [
                "",
                "1. Allow once",
                "2. Always allow",
                "3. Reject",
                "",
                "Send anything else to skip this request and continue with a new message.",
            ]
        )
        return "\n".join(lines)

    lines.append("This session is waiting for an approval on the agent side.")
    if state.blocked_reason:
        lines.append(f"Reason: {state.blocked_reason}")
    lines.extend(
        [
            "",
            "Reply:",
            "1. Approved, continue this session",
            "2. Skip it and continue in a new session",
            "",
            "Sending a new topic also switches to a new session.",
        ]
    )
    return "\n".join(lines)


def render_authorization_reply_hint() -> str:
    return "Reply with an option number: `1/2/3` for a permission request, `1/2` for a blocked session. You can also just send a new topic."


AUTH_STATUS_MESSAGES = {
    "permission-once": "✅ Allowed once. Continuing.",
    "permission-always": "✅ Always allowed. Continuing.",
    "permission-reject": "🛑 Permission request rejected.",
    "resume": "✅ Got it, continuing in the original session.",
    "switch-new": "✅ Switched to a new session.",
    "still-blocked": "⚠️ The session is still waiting for approval. Approve it first, or reply `2` to switch to a new session.",
    "timeout": "⏰ No confirmation in time; stopped waiting for authorization. New messages are handled as new input.",
    "permission-timeout": "⏰ The permission request timed out.",
}


def render_authorization_status(mode: str) -> str:
    return f"## Status\n{AUTH_STATUS_MESSAGES[mode]}"


def render_permission_replied(response: str) -> str:
    if response == "always":
        label = "✅ Permission set to always allow."
    elif response == "once":
        label = "✅ Permission allowed once. Continuing."
    else:
        label = "⚠️ Permission rejected."
    return f"## Status\n{label}"
