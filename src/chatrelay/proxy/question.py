"""Question protocol: the agent asks the chat user to pick or type an answer.

A ``question`` tool call is captured before it reaches the chat as normal
content, normalized into a list of sub-questions, rendered as a prompt, and
held as a ``PendingQuestionState`` until the user replies or it times out.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

QUESTION_TIMEOUT_SECONDS = 15 * 60

_QUOTE_CHARS = re.compile(r"[`'\"“”‘’]")
_TOKEN_SPLIT = re.compile(r"[\n,;；，]+")
_ADDRESSED = re.compile(r"^q?(\d+)\s*[:：=]\s*(.+)$", re.IGNORECASE)
_FREE_TEXT_FLAGS = ("freeText", "allow_text", "allowFreeText", "textInput", "text_input")


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class QuestionItem:
    id: str
    question: str
    options: list[QuestionOption] = field(default_factory=list)
    free_text: bool = False
    multiple: bool = False
    header: str = ""

    @property
    def text_only(self) -> bool:
        return self.free_text and not self.options


@dataclass
class QuestionPayload:
    questions: list[QuestionItem]

    @property
    def has_text_only(self) -> bool:
        return any(q.text_only for q in self.questions)


@dataclass
class ResolvedAnswer:
    question_id: str
    question_index: int
    selected_index: int
    selected_label: str
    raw: str


@dataclass
class ParsedReply:
    """Result of matching a chat reply against a pending question."""

    answers: list[ResolvedAnswer] | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.answers is not None


@dataclass
class PendingQuestionState:
    key: str
    adapter_key: str
    chat_id: str
    session_id: str
    message_id: str
    call_id: str
    payload: QuestionPayload
    created_at: float
    due_at: float
    # Upstream question request id, when the backend supports replying by id.
    request_id: str | None = None


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _first(obj: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = _clean(obj.get(key))
        if value:
            return value
    return ""


def _normalize_option(option: Any) -> QuestionOption | None:
    if isinstance(option, str):
        label = option.strip()
        return QuestionOption(label=label) if label else None
    if not isinstance(option, dict):
        return None
    label = _first(option, "label", "text", "title", "value", "name")
    if not label:
        return None
    return QuestionOption(label=label, description=_first(option, "description", "detail"))


def _normalize_item(item: Any, index: int) -> QuestionItem | None:
    default_id = f"q{index + 1}"
    if isinstance(item, str):
        text = item.strip()
        if not text:
            return None
        return QuestionItem(id=default_id, question=text, free_text=True)
    if not isinstance(item, dict):
        return None

    text = _first(item, "question", "prompt", "title", "text")
    if not text:
        return None

    raw_options: list[Any] = []
    for key in ("options", "choices", "items"):
        if isinstance(item.get(key), list):
            raw_options = item[key]
            break
    options = [opt for opt in (_normalize_option(o) for o in raw_options) if opt is not None]

    free_text = (
        not options
        or any(item.get(flag) is True for flag in _FREE_TEXT_FLAGS)
        or _clean(item.get("mode")).lower() == "input"
        or _clean(item.get("type")).lower() == "input"
        or _clean(item.get("inputType")).lower() == "text"
    )

    return QuestionItem(
        id=_clean(item.get("id")) or default_id,
        question=text,
        options=options,
        free_text=free_text,
        multiple=item.get("multiple") is True,
        header=_first(item, "header", "group"),
    )


def _raw_questions(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("questions"), list):
        return data["questions"]
    if isinstance(data.get("question"), list):
        return data["question"]
    # A string question keeps its sibling options on the same object.
    if isinstance(data.get("question"), str) and data["question"].strip():
        return [data]
    if data.get("question"):
        return [data["question"]]
    nested = data.get("input")
    if isinstance(nested, dict):
        if isinstance(nested.get("questions"), list):
            return nested["questions"]
        if nested.get("question"):
            return [nested["question"]]
    if any(data.get(k) for k in ("prompt", "title", "text", "options", "choices")):
        return [data]
    return []


def extract_question_payload(data: Any) -> QuestionPayload | None:
    """Normalize any accepted question shape; None when nothing usable is found."""
    items = [q for q in (_normalize_item(raw, i) for i, raw in enumerate(_raw_questions(data))) if q]
    if not items:
        return None
    return QuestionPayload(questions=items)


def is_question_tool_part(part: Any) -> bool:
    if not isinstance(part, dict) or part.get("type") != "tool":
        return False
    return _clean(part.get("tool")).lower() == "question"


# ---------------------------------------------------------------------------
# Reply matching
# ---------------------------------------------------------------------------


def normalize_token(text: str) -> str:
    return " ".join(_QUOTE_CHARS.sub("", text.lower()).split())


def resolve_selection(question: QuestionItem, raw: str) -> tuple[int, str] | None:
    """Match one reply token to ``(selected_index, selected_label)``.

    Index ``-1`` means free text. Tries, in order: numeric index, exact
    normalized label, label containment, free-text fallback.
    """
    token = raw.strip()
    if not token:
        return None
    if question.text_only:
        return -1, token

    if token.isdigit():
        idx = int(token) - 1
        if 0 <= idx < len(question.options):
            return idx, question.options[idx].label

    normalized = normalize_token(token)
    if not normalized:
        return None

    labels = [normalize_token(opt.label) for opt in question.options]
    for idx, label in enumerate(labels):
        if label == normalized:
            return idx, question.options[idx].label
    for idx, label in enumerate(labels):
        if normalized in label:
            return idx, question.options[idx].label

    if question.free_text:
        return -1, token
    return None


def split_input_tokens(raw: str) -> list[str]:
    return [t.strip() for t in _TOKEN_SPLIT.split(raw) if t.strip()]


def _answer(questions: list[QuestionItem], index: int, selection: tuple[int, str], raw: str) -> ResolvedAnswer:
    return ResolvedAnswer(
        question_id=questions[index].id,
        question_index=index,
        selected_index=selection[0],
        selected_label=selection[1],
        raw=raw,
    )


def parse_user_reply(text: str, state: PendingQuestionState) -> ParsedReply:
    """Resolve a chat reply into one answer per question.

    Multi-question replies use ``Q<k>:<value>`` tokens in any order, or
    plain positional tokens when their count equals the question count.
    A single unmatched answer rejects the whole reply.
    """
    raw = text.strip()
    if not raw:
        return ParsedReply(reason="empty")

    questions = state.payload.questions
    if len(questions) == 1:
        selection = resolve_selection(questions[0], raw)
        if selection is None:
            return ParsedReply(reason="unmatched-single")
        return ParsedReply(answers=[_answer(questions, 0, selection, raw)])

    answers: list[ResolvedAnswer | None] = [None] * len(questions)
    tokens = split_input_tokens(raw)

    for token in tokens:
        match = _ADDRESSED.match(token)
        if not match:
            continue
        index = int(match.group(1)) - 1
        if not 0 <= index < len(questions):
            continue
        selection = resolve_selection(questions[index], match.group(2))
        if selection is None:
            return ParsedReply(reason=f"unmatched-q{index + 1}")
        answers[index] = _answer(questions, index, selection, token)

    if all(answers):
        return ParsedReply(answers=[a for a in answers if a])

    if len(tokens) == len(questions):
        for index, token in enumerate(tokens):
            if answers[index] is not None:
                continue
            selection = resolve_selection(questions[index], token)
            if selection is None:
                return ParsedReply(reason=f"unmatched-q{index + 1}")
            answers[index] = _answer(questions, index, selection, token)
        if all(answers):
            return ParsedReply(answers=[a for a in answers if a])

    return ParsedReply(reason="incomplete-multi")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_block(question: QuestionItem, index: int) -> list[str]:
    title = f"### Q{index + 1}"
    if question.header:
        title += f" {question.header}"
    lines = [title, question.question]
    if question.text_only:
        lines.append("Reply with your answer as text.")
        return lines
    for idx, option in enumerate(question.options):
        lines.append(f"{idx + 1}. {option.label}")
        if option.description:
            lines.append(f"   - {option.description}")
    return lines


def render_question_prompt(state: PendingQuestionState, timeout_seconds: float = QUESTION_TIMEOUT_SECONDS) -> str:
    payload = state.payload
    lines = ["## Question"]
    if payload.has_text_only:
        lines.append("The agent needs an answer before it can continue. Reply directly:")
    else:
        lines.append("The agent needs you to choose an option. Reply directly:")
    lines.append("")

    for index, question in enumerate(payload.questions):
        lines.extend(_render_block(question, index))
        lines.append("")

    if len(payload.questions) == 1:
        if payload.questions[0].text_only:
            lines.append("Example: `your answer`")
        else:
            lines.append("Example: `1` or the option text")
    else:
        lines.append("Example: `Q1:2,Q2:your answer` or `2,your answer`")
    lines.append(f"The question is cancelled if there is no reply within {int(timeout_seconds // 60)} minutes.")
    return "\n".join(lines)


def render_reply_hint(state: PendingQuestionState) -> str:
    single = len(state.payload.questions) == 1
    if state.payload.has_text_only:
        if single:
            return "Could not read your answer. Reply with the answer text."
        return "Could not read your answer. Reply `Q1:2,Q2:your answer` (or in order: `2,your answer`)."
    if single:
        return "Could not read your answer. Reply `1`/`2`/`3` or the option text."
    return "Could not read your answer. Reply `Q1:2,Q2:1` (or in order: `2,1`); option text works too."


def render_answer_summary(state: PendingQuestionState, answers: list[ResolvedAnswer]) -> str:
    lines = ["## Status", "✅ Got your answer, continuing."]
    for answer in answers:
        question = state.payload.questions[answer.question_index]
        header = f" {question.header}" if question.header else ""
        lines.append(f"- Q{answer.question_index + 1}{header}: {answer.selected_label}")
    return "\n".join(lines)


def render_timeout_notice() -> str:
    return "## Status\n⏰ No reply in time; the question was cancelled. Ask again to restart."


def build_resume_prompt(state: PendingQuestionState, answers: list[ResolvedAnswer], source: str = "user") -> str:
    """Synthetic prompt carrying resolved answers, for backends without reply-by-id."""
    payload = {
        "type": "bridge_question_answers",
        "source": source,
        "sessionId": state.session_id,
        "messageId": state.message_id,
        "questions": [
            {
                "questionId": answer.question_id,
                "question": state.payload.questions[answer.question_index].question,
                "selectedIndex": answer.selected_index,
                "selectedLabel": answer.selected_label,
            }
            for answer in answers
        ],
    }
    return "\n".join(
        [
            "Bridge captured the previous question tool input and resolved answers from the chat.",
            "Use the selections below as the user choices and continue the original task directly.",
            "",
            "```json",
            json.dumps(payload, ensure_ascii=False, indent=2),
            "```",
        ]
    )
