"""Question and permission interrupts relayed through chat."""

from chatrelay.proxy.authorization import (
    AuthorizationDecision,
    AuthorizationMode,
    PendingAuthorizationState,
    is_likely_permission_blocked_error,
)
from chatrelay.proxy.question import PendingQuestionState, QuestionPayload, parse_user_reply

__all__ = [
    "AuthorizationDecision",
    "AuthorizationMode",
    "PendingAuthorizationState",
    "PendingQuestionState",
    "QuestionPayload",
    "is_likely_permission_blocked_error",
    "parse_user_reply",
]
