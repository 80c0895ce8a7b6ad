import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from architect.escalation import (
    EscalationEntry,
    EscalationError,
    EscalationHandler,
    determine_priority,
)
from architect.queue import Queue, QueuedStory, StoryStatus


@dataclass
class _Question:
    id: str
    story_id: str
    agent_id: str
    question: str
    context: dict[str, Any] = field(default_factory=dict)


@pytest.fixture
def queue(tmp_path):
    return Queue(tmp_path / "stories")


@pytest.fixture
def handler(tmp_path, queue):
    return EscalationHandler(tmp_path / "logs", queue)


def test_new_handler(tmp_path, handler):
    assert handler.logs_dir == tmp_path / "logs"
    assert handler.escalations == {}


def test_escalate_business_question(handler, queue):
    queue.add_story(QueuedStory(id="001", title="Test Story", status=StoryStatus.IN_PROGRESS))
    question = _Question(
        id="test-question-001",
        story_id="001",
        agent_id="test-agent",
        question="What are the business requirements for authentication?",
    )
    handler.escalate_business_question(question)

    assert len(handler.escalations) == 1
    assert queue.get_story("001").status == StoryStatus.AWAIT_HUMAN_FEEDBACK
    entry = next(iter(handler.escalations.values()))
    assert entry.type == "business_question"
    assert entry.status == "pending"
    assert entry.priority == "medium"
    assert entry.id.startswith("esc_test-question-001_")


def test_escalate_review_failure(handler, queue):
    queue.add_story(QueuedStory(id="002", title="Test Story 2", status=StoryStatus.WAITING_REVIEW))
    handler.escalate_review_failure("002", "test-agent", 3, "Code failed quality checks")

    assert len(handler.escalations) == 1
    assert queue.get_story("002").status == StoryStatus.AWAIT_HUMAN_FEEDBACK
    entry = next(iter(handler.escalations.values()))
    assert entry.type == "review_failure"
    assert entry.priority == "high"
    assert "Code review failed 3 times" in entry.question
    assert entry.context["reason"] == "3_strikes_rule"


def test_escalate_system_error(handler, queue):
    queue.add_story(QueuedStory(id="003", title="S", status=StoryStatus.IN_PROGRESS))
    entry = handler.escalate_system_error("003", "agent", "disk full", {"path": "/tmp"})
    assert entry.priority == "critical"
    assert entry.type == "system_error"
    assert entry.question == "System error in story 003: disk full"
    assert queue.get_story("003").status == StoryStatus.AWAIT_HUMAN_FEEDBACK


def test_escalation_of_unknown_story_raises(handler):
    with pytest.raises(EscalationError, match="awaiting human feedback"):
        handler.escalate_review_failure("missing", "agent", 3, "bad")


@pytest.mark.parametrize(
    "question, expected",
    [
        ("This is a critical security issue", "critical"),
        ("Important customer requirement", "high"),
        ("What are the business rules?", "medium"),
        ("Simple question about implementation", "low"),
        ("URGENT: Production outage!", "critical"),
        ("Revenue impact analysis needed", "high"),
        ("Basic clarification needed", "low"),
    ],
)
def test_determine_priority(question, expected):
    assert determine_priority(question) == expected


def test_get_escalations(handler):
    now = datetime.now(timezone.utc)
    handler.escalations["esc1"] = EscalationEntry(
        id="esc1", status="pending", type="business_question", escalated_at=now
    )
    handler.escalations["esc2"] = EscalationEntry(
        id="esc2",
        status="acknowledged",
        type="review_failure",
        escalated_at=now - timedelta(hours=1),
    )
    handler.escalations["esc3"] = EscalationEntry(
        id="esc3",
        status="pending",
        type="system_error",
        escalated_at=now - timedelta(hours=2),
    )

    all_entries = handler.get_escalations("")
    assert [e.id for e in all_entries] == ["esc1", "esc2", "esc3"]
    assert len(handler.get_escalations("pending")) == 2
    assert len(handler.get_escalations("acknowledged")) == 1


def test_summary(handler):
    handler.escalations["esc1"] = EscalationEntry(
        id="esc1", status="pending", type="business_question", priority="high"
    )
    handler.escalations["esc2"] = EscalationEntry(
        id="esc2", status="resolved", type="review_failure", priority="critical"
    )
    summary = handler.summary()
    assert summary.total_escalations == 2
    assert summary.pending_escalations == 1
    assert summary.resolved_escalations == 1
    assert summary.escalations_by_type["business_question"] == 1
    assert summary.escalations_by_priority["high"] == 1
    assert len(summary.escalations) == 2


def test_log_escalation(tmp_path, queue, handler):
    entry = EscalationEntry(
        id="test-esc-001",
        story_id="001",
        agent_id="test-agent",
        type="business_question",
        question="Test question",
        escalated_at=datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc),
        status="pending",
        priority="medium",
    )
    handler.log_escalation(entry)

    log_file = tmp_path / "logs" / "escalations.jsonl"
    content = log_file.read_text()
    assert "test-esc-001" in content
    assert "business_question" in content
    assert content.endswith("\n")
    assert EscalationEntry.from_dict(json.loads(content.strip())) == entry

    reloaded = EscalationHandler(tmp_path / "logs", queue)
    assert reloaded.escalations["test-esc-001"].priority == "medium"
    assert reloaded.get_escalations("pending")[0].id == "test-esc-001"


def test_resolve(handler):
    handler.escalations["esc1"] = EscalationEntry(id="esc1", status="pending")
    handler.resolve("esc1", "Issue resolved by manual intervention", "human-operator")
    entry = handler.escalations["esc1"]
    assert entry.status == "resolved"
    assert entry.resolution == "Issue resolved by manual intervention"
    assert entry.human_operator == "human-operator"
    assert entry.resolved_at is not None and entry.resolved_at.tzinfo is not None


def test_acknowledge(handler):
    handler.escalations["esc1"] = EscalationEntry(id="esc1", status="pending")
    handler.acknowledge("esc1", "operator")
    assert handler.escalations["esc1"].status == "acknowledged"
    assert handler.escalations["esc1"].human_operator == "operator"


def test_resolve_unknown_raises(handler):
    with pytest.raises(EscalationError, match="not found"):
        handler.resolve("nope", "x", "y")
    with pytest.raises(EscalationError, match="not found"):
        handler.acknowledge("nope", "y")


def test_reload_uses_latest_line(tmp_path, queue):
    first = EscalationHandler(tmp_path / "logs", queue)
    first.escalations["esc1"] = EscalationEntry(
        id="esc1", status="pending", escalated_at=datetime.now(timezone.utc)
    )
    first.log_escalation(first.escalations["esc1"])
    first.resolve("esc1", "done", "op")

    with (tmp_path / "logs" / "escalations.jsonl").open("a") as handle:
        handle.write("not json\n")

    second = EscalationHandler(tmp_path / "logs", queue)
    assert list(second.escalations) == ["esc1"]
    assert second.escalations["esc1"].status == "resolved"
    assert second.escalations["esc1"].resolution == "done"


def test_entry_round_trip():
    entry = EscalationEntry(
        id="e",
        story_id="s",
        agent_id="a",
        type="system_error",
        question="q",
        context={"k": 1},
        escalated_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        status="pending",
        priority="low",
    )
    data = entry.to_dict()
    assert data["escalated_at"] == "2024-01-02T03:04:05Z"
    assert "resolved_at" not in data
    assert EscalationEntry.from_dict(data) == entry


def test_integration(tmp_path):
    stories_dir = tmp_path / "stories"
    stories_dir.mkdir()
    (stories_dir / "001.md").write_text(
        '---\nid: 001\ntitle: "Integration Test Story"\ndepends_on: []\n'
        "est_points: 2\n---\nTest story for escalation integration."
    )
    queue = Queue(stories_dir)
    queue.load_from_directory()
    handler = EscalationHandler(tmp_path / "logs", queue)

    handler.escalate_business_question(
        _Question(
            id="test-q-001",
            story_id="001",
            agent_id="test-agent",
            question="What are the critical business requirements?",
        )
    )

    assert queue.get_story("001").status == StoryStatus.AWAIT_HUMAN_FEEDBACK
    assert (tmp_path / "logs" / "escalations.jsonl").exists()
    assert handler.summary().pending_escalations == 1