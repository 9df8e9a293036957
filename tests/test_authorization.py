"""Tests for chatrelay.proxy.authorization."""

from __future__ import annotations

import pytest

from chatrelay.errors import AgentApiError
from chatrelay.proxy.authorization import (
    AuthorizationDecision,
    AuthorizationMode,
    PendingAuthorizationState,
    is_likely_permission_blocked_error,
    parse_authorization_reply,
    pattern_text,
    permission_signature,
    render_authorization_prompt,
    render_authorization_status,
    render_permission_replied,
    resolve_decision,
)


def _pending(mode: AuthorizationMode, **kwargs) -> PendingAuthorizationState:
    return PendingAuthorizationState(
        mode=mode,
        key="tg:c1",
        adapter_key="tg",
        chat_id="c1",
        sender_id="u1",
        session_id="s1",
        created_at=0.0,
        due_at=900.0,
        **kwargs,
    )


class TestParseReply:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("1", AuthorizationDecision.ALLOW_ONCE),
            (" Once ", AuthorizationDecision.ALLOW_ONCE),
            ("2", AuthorizationDecision.ALLOW_ALWAYS),
            ("always", AuthorizationDecision.ALLOW_ALWAYS),
            ("3", AuthorizationDecision.REJECT),
            ("拒绝", AuthorizationDecision.REJECT),
            ("`continue`", AuthorizationDecision.RESUME),
            ("new session", AuthorizationDecision.NEW_SESSION),
            ("", AuthorizationDecision.EMPTY),
            ("what is this?", AuthorizationDecision.UNKNOWN),
        ],
    )
    def test_tokens(self, text: str, expected: AuthorizationDecision) -> None:
        assert parse_authorization_reply(text) is expected


class TestResolveDecision:
    def test_permission_mode_unchanged(self) -> None:
        assert resolve_decision("3", AuthorizationMode.PERMISSION_REQUEST) is AuthorizationDecision.REJECT

    def test_blocked_mode_folds_options(self) -> None:
        mode = AuthorizationMode.SESSION_BLOCKED
        assert resolve_decision("1", mode) is AuthorizationDecision.RESUME
        assert resolve_decision("2", mode) is AuthorizationDecision.NEW_SESSION
        assert resolve_decision("reject", mode) is AuthorizationDecision.NEW_SESSION
        assert resolve_decision("hello", mode) is AuthorizationDecision.UNKNOWN

    def test_response_values(self) -> None:
        assert AuthorizationDecision.ALLOW_ONCE.response == "once"
        assert AuthorizationDecision.ALLOW_ALWAYS.response == "always"
        assert AuthorizationDecision.REJECT.response == "reject"
        assert not AuthorizationDecision.RESUME.is_permission_choice


class TestBlockedErrorHeuristic:
    def test_matches_markers(self) -> None:
        assert is_likely_permission_blocked_error(RuntimeError("Session is busy"))
        assert is_likely_permission_blocked_error(AgentApiError("HTTP 409", 409, {"message": "awaiting approval"}))
        assert is_likely_permission_blocked_error("会话忙，请稍后")

    def test_unrelated_errors(self) -> None:
        assert not is_likely_permission_blocked_error(RuntimeError("connection reset"))
        assert not is_likely_permission_blocked_error(None)


class TestSignature:
    def test_pattern_text(self) -> None:
        assert pattern_text(["a", "b"]) == "a, b"
        assert pattern_text("x") == "x"
        assert pattern_text(None) == ""

    def test_signature_distinguishes_calls(self) -> None:
        first = permission_signature("bash", "rm", ["rm *"], "c1")
        assert first == permission_signature("bash", "rm", ["rm *"], "c1")
        assert first != permission_signature("bash", "rm", ["rm *"], "c2")


class TestRendering:
    def test_permission_prompt(self) -> None:
        pending = _pending(
            AuthorizationMode.PERMISSION_REQUEST,
            permission_id="per_1",
            permission_type="bash",
            permission_title="Run rm -rf build",
            permission_pattern=["rm -rf build"],
        )
        out = render_authorization_prompt(pending)
        assert "Permission: Run rm -rf build" in out
        assert "Scope: rm -rf build" in out
        assert "3. Reject" in out

    def test_blocked_prompt(self) -> None:
        out = render_authorization_prompt(_pending(AuthorizationMode.SESSION_BLOCKED, blocked_reason="busy"))
        assert "Reason: busy" in out
        assert "2. Skip it and continue in a new session" in out

    def test_status_lines(self) -> None:
        assert render_authorization_status("timeout").startswith("## Status\n⏰")
        assert "always allow" in render_permission_replied("always")
        assert "rejected" in render_permission_replied("reject")
