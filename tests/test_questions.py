from datetime import datetime, timezone

import pytest

from architect.escalation import EscalationHandler
from architect.queue import Queue, QueuedStory, StoryStatus
from architect.questions import (
    DEFAULT_QUESTION,
    TECHNICAL_QA_TEMPLATE,
    PendingQuestion,
    QuestionError,
    QuestionHandler,
    extract_story_id,
    format_question_context,
    is_business_question,
)


class FakeRenderer:
    def __init__(self):
        self.calls = []

    def render(self, template, data):
        self.calls.append((template, data))
        return f"PROMPT: {data['task_content']}"


class FakeLLM:
    def __init__(self, answer):
        self.answer = answer
        self.prompts = []

    def generate_response(self, prompt):
        self.prompts.append(prompt)
        return self.answer


@pytest.fixture
def queue(tmp_path):
    q = Queue(tmp_path / "stories")
    q.add_story(
        QueuedStory(
            id="001",
            title="Test Story",
            status=StoryStatus.IN_PROGRESS,
            estimated_points=2,
            file_path="/tmp/test/001.md",
        )
    )
    return q


@pytest.fixture
def handler(tmp_path, queue):
    escalations = EscalationHandler(tmp_path / "logs", queue)
    return QuestionHandler(None, FakeRenderer(), queue, escalations)


def test_new_handler_is_empty(handler, queue):
    assert handler.queue is queue
    assert handler.pending_questions() == []


def test_handle_question_mock_mode(handler):
    q = handler.handle_question(
        "msg-1",
        "test-agent",
        {
            "story_id": "001",
            "question": "How should I implement the user authentication?",
            "context": "Working on login functionality",
        },
    )
    assert len(handler.pending_questions()) == 1
    stored = handler.questions["msg-1"]
    assert stored is q
    assert stored.story_id == "001"
    assert stored.agent_id == "test-agent"
    assert stored.question == "How should I implement the user authentication?"
    assert stored.status == "answered"
    assert stored.answer.startswith("Mock answer for question: How should I")
    assert stored.context == {"context": "Working on login functionality"}
    message = handler.sent_messages[-1]
    assert message["to_agent"] == "test-agent"
    assert message["parent_msg_id"] == "msg-1"
    assert message["payload"]["answer"] == stored.answer
    assert message["metadata"]["answer_method"] == "mock"


def test_handle_question_missing_story_id(handler):
    with pytest.raises(QuestionError):
        handler.handle_question(
            "m", "test-agent", {"question": "How should I implement this?"}
        )


def test_handle_question_missing_question(handler):
    with pytest.raises(QuestionError):
        handler.handle_question("m", "test-agent", {"story_id": "001"})


def test_handle_question_front_matter_format(handler):
    content = "---\nid: 001\ntitle: Something\n---\nbody"
    q = handler.handle_question(
        "m2", "agent", {"question": content, "reason": "How do I cache this?"}
    )
    assert q.story_id == "001"
    assert q.question == "How do I cache this?"
    assert q.status == "answered"


def test_handle_question_front_matter_without_reason(handler):
    content = "---\nid: 001\n---\nbody"
    q = handler.handle_question("m3", "agent", {"question": content})
    assert q.question == DEFAULT_QUESTION


@pytest.mark.parametrize(
    "question",
    [
        "How do I implement this function?",
        "What's the best way to handle errors?",
        "Which algorithm should I use?",
        "How to optimize this code?",
    ],
)
def test_technical_questions_are_not_business(question):
    assert is_business_question(question, {}) is False


@pytest.mark.parametrize(
    "question",
    [
        "What are the business requirements for this feature?",
        "How does this affect our revenue model?",
        "What's the compliance policy for data storage?",
        "Should we prioritize customer feedback over stakeholder requests?",
    ],
)
def test_business_questions(question):
    assert is_business_question(question, {}) is True


def test_explicit_business_flag():
    assert is_business_question("Any question", {"is_business_question": True}) is True
    assert is_business_question("Any question", {"is_business_question": "yes"}) is False


def test_business_question_escalation(handler, queue):
    q = handler.handle_question(
        "b1",
        "test-agent",
        {"story_id": "001", "question": "What are the business requirements for this feature?"},
    )
    assert handler.questions["b1"].status == "escalated"
    assert q.answer == ""
    assert queue.get_story("001").status == StoryStatus.AWAIT_HUMAN_FEEDBACK
    assert len(handler.escalation_handler.escalations) == 1


def test_business_question_without_escalation_handler(queue):
    h = QuestionHandler(None, None, queue, None)
    q = h.handle_question("b2", "agent", {"story_id": "001", "question": "pricing policy?"})
    assert q.status == "escalated"
    assert queue.get_story("001").status == StoryStatus.IN_PROGRESS


def test_pending_questions(handler):
    handler.questions["q1"] = PendingQuestion(id="q1", story_id="001", status="pending")
    handler.questions["q2"] = PendingQuestion(id="q2", story_id="002", status="answered")
    assert {q.id for q in handler.pending_questions()} == {"q1", "q2"}


def test_question_status(handler):
    handler.questions["q1"] = PendingQuestion(id="q1", story_id="001", status="pending")
    handler.questions["q2"] = PendingQuestion(id="q2", story_id="002", status="answered")
    handler.questions["q3"] = PendingQuestion(id="q3", story_id="003", status="escalated")
    status = handler.question_status()
    assert status.total_questions == 3
    assert status.pending_questions == 1
    assert status.answered_questions == 1
    assert status.escalated_questions == 1
    assert len(status.questions) == 3


def test_clear_answered_questions(handler):
    handler.questions["q1"] = PendingQuestion(id="q1", story_id="001", status="pending")
    handler.questions["q2"] = PendingQuestion(id="q2", story_id="002", status="answered")
    handler.questions["q3"] = PendingQuestion(id="q3", story_id="003", status="answered")
    assert handler.clear_answered_questions() == 2
    assert list(handler.questions) == ["q1"]


def test_format_question_context():
    story = QueuedStory(
        id="001",
        title="Test Story",
        status=StoryStatus.IN_PROGRESS,
        estimated_points=2,
        depends_on=["002"],
        file_path="/tmp/test/001.md",
    )
    pending = PendingQuestion(
        id="q1",
        story_id="001",
        agent_id="test-agent",
        question="How do I implement this?",
        asked_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        context={"code_snippet": "func test() {}", "file_path": "/src/main.go"},
    )
    text = format_question_context(pending, story)
    assert "Story ID: 001" in text
    assert "Test Story" in text
    assert "test-agent" in text
    assert "How do I implement this?" in text
    assert "code_snippet" in text
    assert "- Asked At: 2024-01-02T03:04:05Z" in text
    assert "- Status: in_progress" in text
    assert "- Dependencies: [002]" in text


@pytest.mark.parametrize(
    "content,expected",
    [
        ("---\nid: 042\ntitle: x\n---\n", "042"),
        ("  ---  \n  id:   abc  \n---", "abc"),
        ("no front matter\nid: 1", ""),
        ("---\ntitle: x\n---\nid: 9", ""),
        ("", ""),
    ],
)
def test_extract_story_id(content, expected):
    assert extract_story_id(content) == expected


def test_llm_answer_path(tmp_path, queue):
    renderer = FakeRenderer()
    llm = FakeLLM("Use bcrypt for hashing")
    h = QuestionHandler(llm, renderer, queue, None)
    q = h.handle_question("l1", "agent-7", {"story_id": "001", "question": "How to hash?"})
    assert q.status == "answered"
    assert q.answer == "Use bcrypt for hashing"
    template, data = renderer.calls[0]
    assert template == TECHNICAL_QA_TEMPLATE
    assert data["extra"]["story_title"] == "Test Story"
    assert data["extra"]["question_id"] == "l1"
    assert llm.prompts == ["PROMPT: How to hash?"]
    assert h.sent_messages[-1]["metadata"]["answer_method"] == "llm"


def test_llm_answer_missing_story(queue):
    h = QuestionHandler(FakeLLM("x"), FakeRenderer(), queue, None)
    with pytest.raises(QuestionError, match="story 999 not found"):
        h.handle_question("l2", "agent", {"story_id": "999", "question": "How to hash?"})