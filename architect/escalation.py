"""Escalation of questions, review failures and system errors to a human operator."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from architect.queue import Queue, QueueError
from architect.textutil import truncate_string

logger = logging.getLogger(__name__)

ESCALATIONS_FILE_NAME = "escalations.jsonl"

_CRITICAL_KEYWORDS = (
    "critical",
    "urgent",
    "emergency",
    "blocker",
    "security",
    "data loss",
    "outage",
    "production",
    "customer impact",
)

_HIGH_KEYWORDS = (
    "important",
    "asap",
    "deadline",
    "revenue",
    "compliance",
    "legal",
    "regulation",
    "audit",
    "risk",
)

_MEDIUM_KEYWORDS = (
    "business",
    "requirement",
    "stakeholder",
    "customer",
    "policy",
    "strategy",
    "roadmap",
    "feature",
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class EscalationError(Exception):
    """Raised when an escalation cannot be recorded or updated."""


class _Question(Protocol):
    id: str
    story_id: str
    agent_id: str
    question: str
    context: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass
class EscalationEntry:
    """A question or failure handed to a human for intervention."""

    id: str = ""
    story_id: str = ""
    agent_id: str = ""
    type: str = ""
    question: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    escalated_at: datetime | None = None
    status: str = ""
    priority: str = ""
    resolved_at: datetime | None = None
    resolution: str = ""
    human_operator: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping of the entry."""
        data: dict[str, Any] = {
            "id": self.id,
            "story_id": self.story_id,
            "agent_id": self.agent_id,
            "type": self.type,
        }
        if self.question:
            data["question"] = self.question
        data["context"] = self.context
        data["escalated_at"] = _format_time(self.escalated_at)
        data["status"] = self.status
        data["priority"] = self.priority
        if self.resolved_at is not None:
            data["resolved_at"] = _format_time(self.resolved_at)
        if self.resolution:
            data["resolution"] = self.resolution
        if self.human_operator:
            data["human_operator"] = self.human_operator
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationEntry":
        """Build an entry from a mapping produced by :meth:`to_dict`."""
        return cls(
            id=data.get("id", "") or "",
            story_id=data.get("story_id", "") or "",
            agent_id=data.get("agent_id", "") or "",
            type=data.get("type", "") or "",
            question=data.get("question", "") or "",
            context=dict(data.get("context") or {}),
            escalated_at=_parse_time(data.get("escalated_at")),
            status=data.get("status", "") or "",
            priority=data.get("priority", "") or "",
            resolved_at=_parse_time(data.get("resolved_at")),
            resolution=data.get("resolution", "") or "",
            human_operator=data.get("human_operator", "") or "",
        )


@dataclass
class EscalationSummary:
    """Counts of escalations by status, type and priority."""

    total_escalations: int = 0
    pending_escalations: int = 0
    resolved_escalations: int = 0
    escalations_by_type: dict[str, int] = field(default_factory=dict)
    escalations_by_priority: dict[str, int] = field(default_factory=dict)
    escalations: list[EscalationEntry] = field(default_factory=list)


def determine_priority(question: str) -> str:
    """Classify a question as critical, high, medium or low from its keywords."""
    lowered = question.lower()
    for priority, keywords in (
        ("critical", _CRITICAL_KEYWORDS),
        ("high", _HIGH_KEYWORDS),
        ("medium", _MEDIUM_KEYWORDS),
    ):
        if any(keyword in lowered for keyword in keywords):
            return priority
    return "low"


class EscalationHandler:
    """Records escalations in a JSON-lines log and parks stories for human feedback."""

    def __init__(self, logs_dir: str | Path, queue: Queue) -> None:
        self.logs_dir = Path(logs_dir)
        self.escalations_file = self.logs_dir / ESCALATIONS_FILE_NAME
        self.escalations: dict[str, EscalationEntry] = {}
        self.queue = queue
        self._load_escalations()

    def _load_escalations(self) -> None:
        if not self.escalations_file.exists():
            return
        try:
            content = self.escalations_file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("failed to read escalations file: %s", exc)
            return

        for number, raw_line in enumerate(content.split("\n"), start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                entry = EscalationEntry.from_dict(json.loads(line))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("failed to parse escalation line %d: %s", number, exc)
                continue
            self.escalations[entry.id] = entry

    def _record(self, escalation: EscalationEntry) -> None:
        self.escalations[escalation.id] = escalation
        try:
            self.log_escalation(escalation)
        except EscalationError as exc:
            raise EscalationError(f"failed to log escalation: {exc}") from exc
        try:
            self.queue.mark_await_human_feedback(escalation.story_id)
        except QueueError as exc:
            raise EscalationError(
                f"failed to mark story {escalation.story_id} as awaiting human feedback: {exc}"
            ) from exc

    def escalate_business_question(self, pending_question: _Question) -> EscalationEntry:
        """Escalate a business question and park its story for human feedback."""
        escalation = EscalationEntry(
            id=f"esc_{pending_question.id}_{int(time.time())}",
            story_id=pending_question.story_id,
            agent_id=pending_question.agent_id,
            type="business_question",
            question=pending_question.question,
            context=pending_question.context,
            escalated_at=_utcnow(),
            status="pending",
            priority=determine_priority(pending_question.question),
        )
        self._record(escalation)
        logger.info(
            "escalated business question %s for story %s (priority: %s): %s",
            escalation.id,
            escalation.story_id,
            escalation.priority,
            truncate_string(escalation.question, 100),
        )
        return escalation

    def escalate_review_failure(
        self, story_id: str, agent_id: str, failure_count: int, last_review: str
    ) -> EscalationEntry:
        """Escalate a story whose code review failed repeatedly."""
        escalation = EscalationEntry(
            id=f"esc_review_{story_id}_{int(time.time())}",
            story_id=story_id,
            agent_id=agent_id,
            type="review_failure",
            question=f"Code review failed {failure_count} times for story {story_id}",
            context={
                "failure_count": failure_count,
                "last_review": last_review,
                "reason": "3_strikes_rule",
            },
            escalated_at=_utcnow(),
            status="pending",
            priority="high",
        )
        self._record(escalation)
        logger.info(
            "escalated review failure %s for story %s after %d failures",
            escalation.id,
            story_id,
            failure_count,
        )
        return escalation

    def escalate_system_error(
        self,
        story_id: str,
        agent_id: str,
        error_msg: str,
        error_context: dict[str, Any] | None,
    ) -> EscalationEntry:
        """Escalate a system error that needs a human to intervene."""
        escalation = EscalationEntry(
            id=f"esc_error_{story_id}_{int(time.time())}",
            story_id=story_id,
            agent_id=agent_id,
            type="system_error",
            question=f"System error in story {story_id}: {error_msg}",
            context=error_context if error_context is not None else {},
            escalated_at=_utcnow(),
            status="pending",
            priority="critical",
        )
        self._record(escalation)
        logger.info(
            "escalated system error %s for story %s (priority: critical)",
            escalation.id,
            story_id,
        )
        return escalation

    def log_escalation(self, escalation: EscalationEntry) -> None:
        """Append an entry as one JSON line to the escalations log."""
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise EscalationError(f"failed to create logs directory: {exc}") from exc
        try:
            line = json.dumps(escalation.to_dict())
        except (TypeError, ValueError) as exc:
            raise EscalationError(f"failed to marshal escalation to JSON: {exc}") from exc
        try:
            with self.escalations_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            raise EscalationError(f"failed to write escalation to log: {exc}") from exc

    def get_escalations(self, status: str | None = None) -> list[EscalationEntry]:
        """Return escalations, newest first, optionally only those with ``status``."""
        selected = [
            entry
            for entry in self.escalations.values()
            if not status or entry.status == status
        ]
        selected.sort(key=lambda entry: entry.escalated_at or _EPOCH, reverse=True)
        return selected

    def summary(self) -> EscalationSummary:
        """Return counts of all escalations by status, type and priority."""
        result = EscalationSummary(
            total_escalations=len(self.escalations),
            escalations=self.get_escalations(),
        )
        for entry in self.escalations.values():
            if entry.status == "pending":
                result.pending_escalations += 1
            elif entry.status == "resolved":
                result.resolved_escalations += 1
            result.escalations_by_type[entry.type] = (
                result.escalations_by_type.get(entry.type, 0) + 1
            )
            result.escalations_by_priority[entry.priority] = (
                result.escalations_by_priority.get(entry.priority, 0) + 1
            )
        return result

    def _require(self, escalation_id: str) -> EscalationEntry:
        entry = self.escalations.get(escalation_id)
        if entry is None:
            raise EscalationError(f"escalation {escalation_id} not found")
        return entry

    def resolve(self, escalation_id: str, resolution: str, human_operator: str) -> None:
        """Mark an escalation as resolved by a human operator."""
        entry = self._require(escalation_id)
        entry.status = "resolved"
        entry.resolution = resolution
        entry.human_operator = human_operator
        entry.resolved_at = _utcnow()
        try:
            self.log_escalation(entry)
        except EscalationError as exc:
            raise EscalationError(f"failed to log escalation resolution: {exc}") from exc
        logger.info("resolved escalation %s by %s", escalation_id, human_operator)

    def acknowledge(self, escalation_id: str, human_operator: str) -> None:
        """Mark an escalation as seen by a human operator."""
        entry = self._require(escalation_id)
        entry.status = "acknowledged"
        entry.human_operator = human_operator
        try:
            self.log_escalation(entry)
        except EscalationError as exc:
            raise EscalationError(
                f"failed to log escalation acknowledgment: {exc}"
            ) from exc
        logger.info("acknowledged escalation %s by %s", escalation_id, human_operator)