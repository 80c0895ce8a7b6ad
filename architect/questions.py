"""Handling of technical questions asked by coding agents."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from architect.escalation import EscalationError, EscalationHandler
from architect.queue import Queue, QueuedStory
from architect.textutil import truncate_string

logger = logging.getLogger(__name__)

TECHNICAL_QA_TEMPLATE = "technical_qa"
ARCHITECT_ID = "architect"
DEFAULT_QUESTION = "Technical assistance requested during development"

_BUSINESS_KEYWORDS = (
    "business",
    "requirement",
    "stakeholder",
    "customer",
    "revenue",
    "pricing",
    "policy",
    "compliance",
    "legal",
    "regulation",
    "strategy",
    "roadmap",
)


class LLMClient(Protocol):
    """Anything that turns a prompt into a text response."""

    def generate_response(self, prompt: str) -> str:
        """Return the model's answer to ``prompt``."""
        ...


class _Renderer(Protocol):
    def render(self, template: str, data: dict[str, Any]) -> str: ...


class QuestionError(Exception):
    """Raised when a question cannot be accepted, answered or escalated."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rfc3339(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class PendingQuestion:
    """A question from an agent and, once known, its answer."""

    id: str = ""
    story_id: str = ""
    agent_id: str = ""
    question: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    asked_at: datetime | None = None
    status: str = "pending"
    answer: str = ""
    answered_at: datetime | None = None


@dataclass
class QuestionStatus:
    """Counts of questions by status."""

    total_questions: int = 0
    pending_questions: int = 0
    answered_questions: int = 0
    escalated_questions: int = 0
    questions: list[PendingQuestion] = field(default_factory=list)


def is_business_question(question: str, context: dict[str, Any] | None) -> bool:
    """True if the question needs a business decision rather than a technical one."""
    lowered = question.lower()
    if any(keyword in lowered for keyword in _BUSINESS_KEYWORDS):
        return True
    return bool(context) and context.get("is_business_question") is True


def extract_story_id(content: str) -> str:
    """Return the ``id:`` value from a front-matter block, or an empty string."""
    in_front_matter = False
    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if line == "---":
            if in_front_matter:
                break
            in_front_matter = True
            continue
        if in_front_matter and line.startswith("id:"):
            return line.partition(":")[2].strip()
    return ""


def format_question_context(pending_question: PendingQuestion, story: QueuedStory) -> str:
    """Describe a question and its story for an answering prompt."""
    dependencies = "[" + " ".join(story.depends_on) + "]"
    text = (
        "Question Context:\n"
        f"- Story ID: {pending_question.story_id}\n"
        f"- Story Title: {story.title}\n"
        f"- Agent ID: {pending_question.agent_id}\n"
        f"- Question: {pending_question.question}\n"
        f"- Asked At: {_rfc3339(pending_question.asked_at)}\n"
        "\n"
        "Story Details:\n"
        f"- Status: {story.status}\n"
        f"- Estimated Points: {story.estimated_points}\n"
        f"- Dependencies: {dependencies}\n"
        f"- File Path: {story.file_path}\n"
        "\n"
        "Additional Context:"
    )
    for key, value in pending_question.context.items():
        text += f"\n- {key}: {value}"
    return text


class QuestionHandler:
    """Answers technical questions and escalates business ones."""

    def __init__(
        self,
        llm_client: LLMClient | None,
        renderer: _Renderer | None,
        queue: Queue,
        escalation_handler: EscalationHandler | None,
    ) -> None:
        self.llm_client = llm_client
        self.renderer = renderer
        self.queue = queue
        self.escalation_handler = escalation_handler
        self.questions: dict[str, PendingQuestion] = {}
        self.sent_messages: list[dict[str, Any]] = []

    def handle_question(
        self, message_id: str, from_agent: str, payload: dict[str, Any] | None
    ) -> PendingQuestion:
        """Record a QUESTION message, then answer or escalate it."""
        payload = payload or {}
        story_id = payload.get("story_id")
        story_id = story_id if isinstance(story_id, str) else ""
        question = payload.get("question")
        question = question if isinstance(question, str) else ""

        if not story_id or not question:
            task_content = payload.get("question")
            if isinstance(task_content, str):
                extracted = extract_story_id(task_content)
                if extracted:
                    story_id = extracted
                    reason = payload.get("reason")
                    question = reason if isinstance(reason, str) else DEFAULT_QUESTION

        if not story_id or not question:
            raise QuestionError(
                "invalid question message: missing story_id or question "
                f"(storyID='{story_id}', question='{question}')"
            )

        pending = PendingQuestion(
            id=message_id,
            story_id=story_id,
            agent_id=from_agent,
            question=question,
            context={
                key: value
                for key, value in payload.items()
                if key not in ("story_id", "question")
            },
            asked_at=_utcnow(),
            status="pending",
        )
        self.questions[pending.id] = pending

        if is_business_question(question, pending.context):
            self._escalate(pending)
        else:
            self._answer(pending)
        return pending

    def _answer(self, pending: PendingQuestion) -> None:
        if self.llm_client is None:
            answer = (
                f"Mock answer for question: {pending.question}\n\n"
                "This is a simulated technical response that would normally be "
                "generated by the LLM based on the question context and story details."
            )
        else:
            story = self.queue.get_story(pending.story_id)
            if story is None:
                raise QuestionError(f"story {pending.story_id} not found in queue")
            if self.renderer is None:
                raise QuestionError("failed to render Q&A template: no renderer")
            data = {
                "task_content": pending.question,
                "context": format_question_context(pending, story),
                "extra": {
                    "story_id": pending.story_id,
                    "story_title": story.title,
                    "story_file_path": story.file_path,
                    "agent_id": pending.agent_id,
                    "question_id": pending.id,
                    "question_context": pending.context,
                },
            }
            try:
                prompt = self.renderer.render(TECHNICAL_QA_TEMPLATE, data)
            except Exception as exc:
                raise QuestionError(f"failed to render Q&A template: {exc}") from exc
            try:
                answer = self.llm_client.generate_response(prompt)
            except Exception as exc:
                raise QuestionError(
                    f"failed to get LLM response for question: {exc}"
                ) from exc

        pending.answer = answer
        pending.status = "answered"
        pending.answered_at = _utcnow()
        self._send_answer(pending)

    def _send_answer(self, pending: PendingQuestion) -> None:
        message = {
            "id": uuid.uuid4().hex,
            "type": "RESULT",
            "from_agent": ARCHITECT_ID,
            "to_agent": pending.agent_id,
            "parent_msg_id": pending.id,
            "payload": {
                "question_id": pending.id,
                "story_id": pending.story_id,
                "answer": pending.answer,
                "answered_at": _rfc3339(pending.answered_at),
            },
            "metadata": {
                "question_type": "technical",
                "answer_method": "mock" if self.llm_client is None else "llm",
            },
        }
        self.sent_messages.append(message)
        logger.info(
            "answered question %s for story %s: %s",
            pending.id,
            pending.story_id,
            truncate_string(pending.answer, 100),
        )

    def _escalate(self, pending: PendingQuestion) -> None:
        pending.status = "escalated"
        if self.escalation_handler is None:
            logger.warning(
                "escalated business question %s for story %s: %s",
                pending.id,
                pending.story_id,
                truncate_string(pending.question, 100),
            )
            return
        try:
            self.escalation_handler.escalate_business_question(pending)
        except EscalationError as exc:
            raise QuestionError(f"failed to escalate business question: {exc}") from exc

    def pending_questions(self) -> list[PendingQuestion]:
        """Return every tracked question, whatever its status."""
        return list(self.questions.values())

    def question_status(self) -> QuestionStatus:
        """Return counts of tracked questions by status."""
        status = QuestionStatus(
            total_questions=len(self.questions),
            questions=list(self.questions.values()),
        )
        for question in self.questions.values():
            if question.status == "pending":
                status.pending_questions += 1
            elif question.status == "answered":
                status.answered_questions += 1
            elif question.status == "escalated":
                status.escalated_questions += 1
        return status

    def clear_answered_questions(self) -> int:
        """Forget answered questions and return how many were removed."""
        answered = [qid for qid, q in self.questions.items() if q.status == "answered"]
        for qid in answered:
            del self.questions[qid]
        return len(answered)