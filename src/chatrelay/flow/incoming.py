"""Chat message -> agent prompt.

Besides plain prompts, incoming text may answer a pending question or a
pending authorization; those replies are resolved here before anything is
submitted to the agent.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chatrelay.agent.api import AgentApi
from chatrelay.bridge.delivery import send_notice
from chatrelay.bridge.mux import AdapterMux, BridgeAdapter
from chatrelay.errors import EndpointUnavailable, SessionCreateError, extract_error_message, format_user_error
from chatrelay.events.state import BridgeState, chat_cache_key
from chatrelay.proxy.authorization import (
    AuthorizationDecision,
    AuthorizationMode,
    PendingAuthorizationState,
    is_likely_permission_blocked_error,
    render_authorization_prompt,
    render_authorization_reply_hint,
    render_authorization_status,
    resolve_decision,
)
from chatrelay.proxy.question import (
    PendingQuestionState,
    ResolvedAnswer,
    build_resume_prompt,
    parse_user_reply,
    render_answer_summary,
    render_reply_hint,
)

logger = logging.getLogger(__name__)

LOADING_EMOJI = "⏳"
ERROR_HEADER = "## Error"
DEFAULT_BLOCKED_REASON = "The session needs an approval on the agent side."

PERMISSION_STATUS_BY_DECISION = {
    AuthorizationDecision.ALLOW_ONCE: "permission-once",
    AuthorizationDecision.ALLOW_ALWAYS: "permission-always",
    AuthorizationDecision.REJECT: "permission-reject",
}


@dataclass
class SlashCommand:
    command: str
    arguments: str = ""


def parse_slash_command(text: str) -> SlashCommand | None:
    stripped = (text or "").strip()
    if not stripped.startswith("/") or len(stripped) < 2:
        return None
    head, _, rest = stripped[1:].partition(" ")
    if not head:
        return None
    return SlashCommand(command=head.lower(), arguments=rest.strip())


def build_bridge_metadata(
    *, adapter_key: str, chat_id: str, sender_id: str, session_id: str, source: str
) -> dict[str, Any]:
    """Routing metadata attached to every prompt part this bridge submits."""
    return {
        "bridge": True,
        "source": source,
        "adapter_key": adapter_key,
        "chat_id": chat_id,
        "sender_id": sender_id,
        "session_id": session_id,
        "routed_at": datetime.now(timezone.utc).isoformat(),
    }


class IncomingFlow:
    """Handle messages arriving from one adapter."""

    def __init__(self, api: AgentApi, mux: AdapterMux, adapter_key: str, state: BridgeState) -> None:
        adapter = mux.get(adapter_key)
        if adapter is None:
            raise ValueError(f"adapter not found: {adapter_key}")
        self.api = api
        self.mux = mux
        self.adapter_key = adapter_key
        self.adapter: BridgeAdapter = adapter
        self.state = state

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(
        self,
        chat_id: str,
        text: str,
        message_id: str | None = None,
        sender_id: str = "user",
        parts: list[dict[str, Any]] | None = None,
    ) -> None:
        text = text or ""
        logger.info(
            "incoming adapter=%s chat=%s sender=%s msg=%s text=%d parts=%d",
            self.adapter_key,
            chat_id,
            sender_id,
            message_id or "-",
            len(text),
            len(parts or []),
        )
        slash = parse_slash_command(text)
        if slash is None and text.strip().lower() == "ping":
            await send_notice(self.adapter, chat_id, "Pong! ⚡️")
            return

        reaction_id = None
        add_reaction = getattr(self.adapter, "add_reaction", None)
        remove_reaction = getattr(self.adapter, "remove_reaction", None)
        try:
            if message_id and add_reaction is not None:
                reaction_id = await add_reaction(message_id, LOADING_EMOJI)
            await self._route(chat_id, text, sender_id, slash, list(parts or []))
        except Exception as exc:
            logger.exception("incoming failed adapter=%s chat=%s", self.adapter_key, chat_id)
            await send_notice(self.adapter, chat_id, f"{ERROR_HEADER}\n{format_user_error(exc)}")
        finally:
            if message_id and reaction_id and remove_reaction is not None:
                try:
                    await remove_reaction(message_id, reaction_id)
                except Exception as exc:
                    logger.debug("remove reaction failed msg=%s: %s", message_id, exc)

    async def _route(
        self, chat_id: str, text: str, sender_id: str, slash: SlashCommand | None, parts: list[dict[str, Any]]
    ) -> None:
        cache_key = chat_cache_key(self.adapter_key, chat_id)

        pending_auth = self.state.pending_authorizations.get(cache_key)
        if pending_auth is not None and slash is None:
            if await self._answer_authorization(pending_auth, chat_id, sender_id, text, parts):
                return

        if slash is not None and slash.command == "new":
            await self._start_over(chat_id, sender_id)
            return

        pending_question = self.state.pending_questions.get(cache_key)
        if pending_question is not None and slash is None:
            if await self._answer_question(pending_question, chat_id, sender_id, text):
                return

        await self._submit_new_prompt(chat_id, sender_id, text, parts)

    # ------------------------------------------------------------------
    # Sessions and prompts
    # ------------------------------------------------------------------

    async def create_new_session(self, chat_id: str, sender_id: str) -> str:
        """New session for the chat, keeping its agent and model selection."""
        cache_key = chat_cache_key(self.adapter_key, chat_id)
        previous_agent = self.state.chat_agent.get(cache_key)
        previous_model = self.state.chat_model.get(cache_key)
        title = f"[{self.adapter_key}] Chat {chat_id[-4:]} [{datetime.now().strftime('%H:%M:%S')}]"
        session_id = await self.api.create_session(title)
        if not session_id:
            raise SessionCreateError("failed to create session")

        self.state.session_cache[cache_key] = session_id
        self.state.bind_route(session_id, chat_id, sender_id, self.adapter_key)
        agent = previous_agent or self.state.default_agent
        if agent:
            self.state.chat_agent[cache_key] = agent
        if previous_model is not None:
            self.state.chat_model[cache_key] = previous_model
        else:
            self.state.chat_model.pop(cache_key, None)
        return session_id

    async def ensure_session(self, chat_id: str, sender_id: str) -> str:
        session_id = self.state.session_cache.get(chat_cache_key(self.adapter_key, chat_id))
        if session_id:
            return session_id
        return await self.create_new_session(chat_id, sender_id)

    async def submit_prompt(self, chat_id: str, session_id: str, parts: list[dict[str, Any]]) -> None:
        cache_key = chat_cache_key(self.adapter_key, chat_id)
        await self.api.prompt(
            session_id,
            parts,
            agent=self.state.chat_agent.get(cache_key),
            model=self.state.chat_model.get(cache_key),
        )

    async def _submit_new_prompt(self, chat_id: str, sender_id: str, text: str, parts: list[dict[str, Any]]) -> None:
        session_id = await self.ensure_session(chat_id, sender_id)
        self.state.bind_route(session_id, chat_id, sender_id, self.adapter_key)

        prompt_parts: list[dict[str, Any]] = []
        if text.strip():
            prompt_parts.append(
                {
                    "type": "text",
                    "text": text,
                    "metadata": build_bridge_metadata(
                        adapter_key=self.adapter_key,
                        chat_id=chat_id,
                        sender_id=sender_id,
                        session_id=session_id,
                        source="bridge.incoming",
                    ),
                }
            )
        prompt_parts.extend(parts)
        if not prompt_parts:
            return

        try:
            await self.submit_prompt(chat_id, session_id, prompt_parts)
        except Exception as exc:
            if not is_likely_permission_blocked_error(exc):
                raise
            await self.arm_blocked_authorization(
                chat_id, sender_id, session_id, "bridge.incoming", prompt_parts, extract_error_message(exc)
            )
            return
        logger.info("prompt sent adapter=%s session=%s parts=%d", self.adapter_key, session_id, len(prompt_parts))

    async def _start_over(self, chat_id: str, sender_id: str) -> None:
        cache_key = chat_cache_key(self.adapter_key, chat_id)
        self.state.clear_pending_question(cache_key)
        self.state.clear_pending_authorization(cache_key)
        self.state.clear_handled_questions(cache_key)
        session_id = await self.create_new_session(chat_id, sender_id)
        logger.info("new session adapter=%s chat=%s session=%s", self.adapter_key, chat_id, session_id)
        await send_notice(self.adapter, chat_id, f"## Status\n✅ New session started: `{session_id}`")

    # ------------------------------------------------------------------
    # Authorization replies
    # ------------------------------------------------------------------

    async def arm_blocked_authorization(
        self,
        chat_id: str,
        sender_id: str,
        session_id: str,
        source: str,
        deferred_parts: list[dict[str, Any]],
        reason: str | None,
    ) -> PendingAuthorizationState:
        """Hold a prompt that failed because the session is blocked."""
        cache_key = chat_cache_key(self.adapter_key, chat_id)
        self.state.clear_pending_authorization(cache_key)
        now = self.state.clock()
        pending = PendingAuthorizationState(
            mode=AuthorizationMode.SESSION_BLOCKED,
            key=cache_key,
            adapter_key=self.adapter_key,
            chat_id=chat_id,
            sender_id=sender_id,
            session_id=session_id,
            created_at=now,
            due_at=now + self.state.auth_timeout,
            blocked_reason=reason or DEFAULT_BLOCKED_REASON,
            source=source,
            deferred_parts=copy.deepcopy(deferred_parts),
        )
        self.state.pending_authorizations[cache_key] = pending
        logger.info("session blocked sid=%s chat=%s reason=%s", session_id, chat_id, pending.blocked_reason)

        async def _expire() -> None:
            current = self.state.pending_authorizations.get(cache_key)
            if current is None or current.session_id != session_id:
                return
            self.state.clear_pending_authorization(cache_key)
            await send_notice(self.adapter, chat_id, render_authorization_status("timeout"))

        self.state.schedule_authorization_timeout(cache_key, _expire)
        await send_notice(self.adapter, chat_id, render_authorization_prompt(pending))
        return pending

    async def reply_permission(self, pending: PendingAuthorizationState, decision: AuthorizationDecision) -> None:
        """Answer via the request-id endpoint, else the per-session one."""
        assert pending.permission_id is not None
        response = decision.response
        try:
            await self.api.reply_permission(pending.permission_id, response)
            logger.info("permission reply sent sid=%s request=%s reply=%s", pending.session_id, pending.permission_id, response)
        except EndpointUnavailable:
            await self.api.respond_permission(pending.session_id, pending.permission_id, response)
            logger.info(
                "permission reply sent (legacy) sid=%s permission=%s response=%s",
                pending.session_id,
                pending.permission_id,
                response,
            )

    async def _answer_authorization(
        self,
        pending: PendingAuthorizationState,
        chat_id: str,
        sender_id: str,
        text: str,
        parts: list[dict[str, Any]],
    ) -> bool:
        """Resolve a reply to a pending authorization.

        Returns True when the message was consumed; False hands it over to
        normal prompt handling.
        """
        decision = resolve_decision(text, pending.mode)
        if decision is AuthorizationDecision.EMPTY and not parts:
            await self.adapter.send_message(chat_id, render_authorization_reply_hint())
            return True

        if pending.mode is AuthorizationMode.PERMISSION_REQUEST:
            if not decision.is_permission_choice:
                self.state.clear_pending_authorization(pending.key)
                logger.info("permission non-option input, handing over adapter=%s chat=%s", self.adapter_key, chat_id)
                return False
            if not pending.permission_id:
                self.state.clear_pending_authorization(pending.key)
                await self.adapter.send_message(chat_id, f"{ERROR_HEADER}\nThe permission request has no id; cancelled.")
                return True
            await self.reply_permission(pending, decision)
            self.state.clear_pending_authorization(pending.key)
            await send_notice(self.adapter, chat_id, render_authorization_status(PERMISSION_STATUS_BY_DECISION[decision]))
            return True

        if decision is AuthorizationDecision.RESUME:
            try:
                await self.submit_prompt(chat_id, pending.session_id, pending.deferred_parts)
            except Exception as exc:
                if is_likely_permission_blocked_error(exc):
                    await send_notice(self.adapter, chat_id, render_authorization_status("still-blocked"))
                    return True
                raise
            self.state.clear_pending_authorization(pending.key)
            await send_notice(self.adapter, chat_id, render_authorization_status("resume"))
            return True

        self.state.clear_pending_authorization(pending.key)
        if decision is AuthorizationDecision.NEW_SESSION:
            await self.create_new_session(chat_id, sender_id)
            await send_notice(self.adapter, chat_id, render_authorization_status("switch-new"))
            return True
        logger.info("blocked session non-option input, handing over adapter=%s chat=%s", self.adapter_key, chat_id)
        return False

    # ------------------------------------------------------------------
    # Question replies
    # ------------------------------------------------------------------

    async def reply_question(self, pending: PendingQuestionState, answers: list[ResolvedAnswer]) -> bool:
        """Answer by request id. False means the caller must fall back."""
        request_id = pending.request_id or pending.call_id
        try:
            await self.api.reply_question(request_id, [[answer.selected_label] for answer in answers])
        except EndpointUnavailable:
            logger.warning("question reply endpoint unavailable sid=%s request=%s, using resume prompt", pending.session_id, request_id)
            return False
        except Exception as exc:
            logger.warning("question reply failed sid=%s request=%s: %s", pending.session_id, request_id, exc)
            return False
        logger.info("question reply sent sid=%s request=%s answers=%d", pending.session_id, request_id, len(answers))
        return True

    async def _answer_question(self, pending: PendingQuestionState, chat_id: str, sender_id: str, text: str) -> bool:
        if not text.strip():
            await self.adapter.send_message(chat_id, render_reply_hint(pending))
            return True

        parsed = parse_user_reply(text, pending)
        if not parsed.ok or parsed.answers is None:
            self.state.mark_question_call_handled(pending.key, pending.message_id, pending.call_id)
            self.state.clear_pending_question(pending.key)
            logger.info(
                "question reply unresolved, handing over chat=%s sid=%s call=%s reason=%s",
                chat_id,
                pending.session_id,
                pending.call_id,
                parsed.reason,
            )
            return False

        answers = parsed.answers
        session_id = pending.session_id
        self.state.bind_route(session_id, chat_id, sender_id, self.adapter_key)

        if not await self.reply_question(pending, answers):
            resume_parts = [
                {
                    "type": "text",
                    "text": build_resume_prompt(pending, answers, "user"),
                    "metadata": build_bridge_metadata(
                        adapter_key=self.adapter_key,
                        chat_id=chat_id,
                        sender_id=sender_id,
                        session_id=session_id,
                        source="bridge.question.resume",
                    ),
                }
            ]
            try:
                await self.submit_prompt(chat_id, session_id, resume_parts)
            except Exception as exc:
                if not is_likely_permission_blocked_error(exc):
                    raise
                await self.arm_blocked_authorization(
                    chat_id, sender_id, session_id, "bridge.question.resume", resume_parts, extract_error_message(exc)
                )

        self.state.mark_question_call_handled(pending.key, pending.message_id, pending.call_id)
        self.state.clear_pending_question(pending.key)
        await self.adapter.send_message(chat_id, render_answer_summary(pending, answers))
        return True
