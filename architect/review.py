"""Review of code submitted by coding agents: automated checks, LLM review and the 3-strikes rule."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from architect.checks import CODE_REVIEW_TEMPLATE, CheckError, run_llm_tool_invocation, run_make_check
from architect.escalation import EscalationError, EscalationHandler
from architect.queue import Queue, QueueError, QueuedStory
from architect.textutil import truncate_string

logger = logging.getLogger(__name__)

ARCHITECT_ID = "architect"
CHECK_TYPES = ("format", "lint", "test")
MAX_REJECTIONS_BEFORE_ESCALATION = 2

_APPROVAL_MARKERS = ("approved", "looks good", "lgtm")
_SUBMISSION_KEYS = ("story_id", "code_path", "code_content")

_CHECK_FEEDBACK = {
    "format": "• Code formatting issues found. Please run the project's formatter to fix formatting.\n",
    "lint": "• Linting issues found. Please address the warnings reported by the project's linter.\n",
    "test": "• Tests are failing. Please ensure all tests pass before resubmitting.\n",
}


class _LLMClient(Protocol):
    def generate_response(self, prompt: str) -> str: ...


class _Renderer(Protocol):
    def render(self, template: str, data: dict[str, Any]) -> str: ...


class ReviewError(Exception):
    """Raised when a submission cannot be accepted, reviewed or answered."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rfc3339(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class ReviewAttempt:
    """One completed review of a submission."""

    attempt_number: int
    reviewed_at: datetime
    result: str
    review_notes: str
    checks_passed: bool


@dataclass
class PendingReview:
    """A code submission and the state of its review."""

    id: str = ""
    story_id: str = ""
    agent_id: str = ""
    code_path: str = ""
    code_content: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime | None = None
    status: str = "pending"
    review_notes: str = ""
    reviewed_at: datetime | None = None
    checks_run: list[str] = field(default_factory=list)
    check_results: dict[str, bool] = field(default_factory=dict)
    rejection_count: int = 0
    review_history: list[ReviewAttempt] = field(default_factory=list)


@dataclass
class ReviewStatus:
    """Counts of reviews by status."""

    total_reviews: int = 0
    pending_reviews: int = 0
    approved_reviews: int = 0
    rejected_reviews: int = 0
    needs_fixes_reviews: int = 0
    reviews: list[PendingReview] = field(default_factory=list)


def all_checks_pass(check_results: dict[str, bool]) -> bool:
    """True if at least one check ran and every check passed."""
    return bool(check_results) and all(check_results.values())


def generate_fix_feedback(review: PendingReview) -> str:
    """Build the feedback text sent to an agent whose submission needs fixes."""
    feedback = "Code review feedback:\n\n"
    failed = [check for check, passed in review.check_results.items() if not passed]
    for check in failed:
        feedback += _CHECK_FEEDBACK.get(
            check, f"• {check} check failed. Please review and fix the issues.\n"
        )
    if not failed:
        feedback += (
            "• Automated checks passed, but manual review identified issues "
            "that need attention.\n"
        )
    feedback += "\nPlease address these issues and resubmit your code."
    return feedback


def format_review_context(review: PendingReview, story: QueuedStory) -> str:
    """Describe a submission, its story and its checks for a review prompt."""
    dependencies = "[" + " ".join(story.depends_on) + "]"
    text = (
        "Code Review Context:\n"
        f"- Story ID: {review.story_id}\n"
        f"- Story Title: {story.title}\n"
        f"- Agent ID: {review.agent_id}\n"
        f"- Submitted At: {_rfc3339(review.submitted_at)}\n"
        f"- Code Path: {review.code_path}\n"
        f"- Rejection Count: {review.rejection_count}/3 "
        "(escalates to human after 3 rejections)\n"
        "\n"
        "Story Details:\n"
        f"- Status: {story.status}\n"
        f"- Estimated Points: {story.estimated_points}\n"
        f"- Dependencies: {dependencies}\n"
        f"- File Path: {story.file_path}\n"
        "\n"
        "Acceptance Requirements:\n"
        "1. Meets story acceptance criteria as defined in the story\n"
        "2. Generally adheres to good coding practices and established patterns\n"
        "3. Has high levels of test coverage (>80% unless not feasible)\n"
        "4. Doesn't change shared interfaces/design patterns without good reason\n"
        '5. Is deemed "production-ready" with appropriate error handling and documentation\n'
        "\n"
        "Automated Checks Results:"
    )
    for check in review.checks_run:
        result = "✅ PASSED" if review.check_results.get(check) else "❌ FAILED"
        text += f"\n- {check}: {result}"

    if review.review_history:
        text += "\n\nPrevious Review History:"
        for attempt in review.review_history:
            text += (
                f"\nAttempt {attempt.attempt_number} "
                f"({attempt.reviewed_at.strftime('%Y-%m-%d %H:%M:%S')}): "
                f"{attempt.result} - {truncate_string(attempt.review_notes, 100)}"
            )

    if review.context:
        text += "\n\nSubmission Context:"
        for key, value in review.context.items():
            text += f"\n- {key}: {value}"
    return text


class ReviewEvaluator:
    """Runs checks on submissions, reviews them and approves, rejects or escalates."""

    def __init__(
        self,
        llm_client: _LLMClient | None,
        renderer: _Renderer | None,
        queue: Queue,
        workspace_dir: str | Path,
        escalation_handler: EscalationHandler | None,
    ) -> None:
        self.llm_client = llm_client
        self.renderer = renderer
        self.queue = queue
        self.workspace_dir = str(workspace_dir)
        self.escalation_handler = escalation_handler
        self.reviews: dict[str, PendingReview] = {}
        self.sent_messages: list[dict[str, Any]] = []

    def handle_result(
        self, message_id: str, from_agent: str, payload: dict[str, Any] | None
    ) -> PendingReview:
        """Record a code submission and review it."""
        payload = payload or {}
        story_id = payload.get("story_id")
        if not isinstance(story_id, str) or not story_id:
            raise ReviewError("invalid result message: missing story_id")
        code_path = payload.get("code_path")
        code_content = payload.get("code_content")

        review = PendingReview(
            id=message_id,
            story_id=story_id,
            agent_id=from_agent,
            code_path=code_path if isinstance(code_path, str) else "",
            code_content=code_content if isinstance(code_content, str) else "",
            context={k: v for k, v in payload.items() if k not in _SUBMISSION_KEYS},
            submitted_at=_utcnow(),
            status="pending",
        )
        self.reviews[review.id] = review
        self._perform_automated_review(review)
        return review

    def _perform_automated_review(self, review: PendingReview) -> None:
        logger.info(
            "starting automated review for story %s (agent %s)",
            review.story_id,
            review.agent_id,
        )
        if not self.run_automated_checks(review):
            self._request_code_fixes(review)
            return
        if self.llm_client is None:
            self._approve(review, "Mock approval - automated checks passed")
            return
        try:
            self._perform_llm_review(review)
        except ReviewError as exc:
            raise ReviewError(f"LLM review failed: {exc}") from exc

    def run_automated_checks(self, review: PendingReview) -> bool:
        """Run the format, lint and test checks; True if all of them passed."""
        all_passed = True
        for check in CHECK_TYPES:
            try:
                passed = self._run_single_check(check, review)
            except CheckError as exc:
                logger.warning("check %s failed with error: %s", check, exc)
                passed = False
            else:
                logger.info("check %s %s", check, "passed" if passed else "failed")
            review.check_results[check] = passed
            all_passed = all_passed and passed
            review.checks_run.append(check)
        return all_passed

    def _run_single_check(self, check_type: str, review: PendingReview) -> bool:
        story = self.queue.get_story(review.story_id)
        if story is None:
            raise CheckError(f"story {review.story_id} not found")

        work_dir = self.workspace_dir
        story_workspace = review.context.get("workspace_dir")
        if isinstance(story_workspace, str) and story_workspace:
            work_dir = story_workspace

        if self.llm_client is not None:
            if self.renderer is None:
                raise CheckError("failed to render code review template: no renderer")
            return run_llm_tool_invocation(
                self.llm_client, self.renderer, work_dir, check_type, story
            )
        return run_make_check(check_type, work_dir)

    def _perform_llm_review(self, review: PendingReview) -> None:
        story = self.queue.get_story(review.story_id)
        if story is None:
            raise ReviewError(f"story {review.story_id} not found in queue")
        if self.renderer is None or self.llm_client is None:
            raise ReviewError("failed to render code review template: no renderer")

        data = {
            "task_content": review.code_content,
            "context": format_review_context(review, story),
            "extra": {
                "story_id": review.story_id,
                "story_title": story.title,
                "agent_id": review.agent_id,
                "review_id": review.id,
                "code_path": review.code_path,
                "checks_run": review.checks_run,
                "check_results": review.check_results,
                "submission_context": review.context,
            },
        }
        try:
            prompt = self.renderer.render(CODE_REVIEW_TEMPLATE, data)
        except Exception as exc:
            raise ReviewError(f"failed to render code review template: {exc}") from exc
        try:
            response = self.llm_client.generate_response(prompt)
        except Exception as exc:
            raise ReviewError(
                f"failed to get LLM response for code review: {exc}"
            ) from exc
        self.process_llm_review_response(review, response)

    def process_llm_review_response(self, review: PendingReview, response: str) -> None:
        """Approve, reject or escalate a submission from the LLM's review text."""
        lowered = response.lower()
        approved = any(marker in lowered for marker in _APPROVAL_MARKERS)
        if not approved and review.rejection_count >= MAX_REJECTIONS_BEFORE_ESCALATION:
            self._escalate_to_human(review, response)
            return

        review.review_history.append(
            ReviewAttempt(
                attempt_number=len(review.review_history) + 1,
                reviewed_at=_utcnow(),
                result="approved" if approved else "needs_fixes",
                review_notes=response,
                checks_passed=all_checks_pass(review.check_results),
            )
        )
        if approved:
            self._approve(review, response)
        else:
            review.rejection_count += 1
            self._request_code_fixes(review)

    def _escalate_to_human(self, review: PendingReview, response: str) -> None:
        review.status = "escalated"
        review.review_notes = (
            f"Escalated to human after 3 rejections. Latest review: {response}"
        )
        review.reviewed_at = _utcnow()

        if self.escalation_handler is not None:
            try:
                self.escalation_handler.escalate_review_failure(
                    review.story_id, review.agent_id, review.rejection_count + 1, response
                )
            except EscalationError as exc:
                raise ReviewError(f"failed to escalate review failure: {exc}") from exc
        else:
            try:
                self.queue.mark_await_human_feedback(review.story_id)
            except QueueError as exc:
                raise ReviewError(
                    f"failed to mark story {review.story_id} as awaiting human feedback: {exc}"
                ) from exc
            logger.warning(
                "escalated story %s to human intervention after 3 rejections",
                review.story_id,
            )
        self._send_review_result(review, "ESCALATED")

    def _approve(self, review: PendingReview, notes: str) -> None:
        review.status = "approved"
        review.review_notes = notes
        review.reviewed_at = _utcnow()
        try:
            self.queue.mark_completed(review.story_id)
        except QueueError as exc:
            raise ReviewError(
                f"failed to mark story {review.story_id} as completed: {exc}"
            ) from exc
        self._send_review_result(review, "APPROVED")
        logger.info(
            "approved submission for story %s from agent %s",
            review.story_id,
            review.agent_id,
        )

    def _request_code_fixes(self, review: PendingReview) -> None:
        review.status = "needs_fixes"
        review.reviewed_at = _utcnow()
        review.review_notes = generate_fix_feedback(review)
        try:
            self.queue.mark_waiting_review(review.story_id)
        except QueueError as exc:
            raise ReviewError(
                f"failed to mark story {review.story_id} as waiting review: {exc}"
            ) from exc
        self._send_review_result(review, "NEEDS_FIXES")
        logger.info(
            "requested fixes for story %s from agent %s", review.story_id, review.agent_id
        )

    def _send_review_result(self, review: PendingReview, result: str) -> None:
        message = {
            "id": uuid.uuid4().hex,
            "type": "RESULT",
            "from_agent": ARCHITECT_ID,
            "to_agent": review.agent_id,
            "parent_msg_id": review.id,
            "payload": {
                "review_id": review.id,
                "story_id": review.story_id,
                "review_result": result,
                "review_notes": review.review_notes,
                "reviewed_at": _rfc3339(review.reviewed_at),
                "checks_run": list(review.checks_run),
                "check_results": dict(review.check_results),
            },
            "metadata": {
                "review_type": "automated",
                "review_status": result.lower(),
            },
        }
        self.sent_messages.append(message)
        logger.info("review result for story %s: %s", review.story_id, result)

    def pending_reviews(self) -> list[PendingReview]:
        """Return every tracked review, whatever its status."""
        return list(self.reviews.values())

    def review_status(self) -> ReviewStatus:
        """Return counts of tracked reviews by status."""
        status = ReviewStatus(
            total_reviews=len(self.reviews), reviews=list(self.reviews.values())
        )
        for review in self.reviews.values():
            if review.status == "pending":
                status.pending_reviews += 1
            elif review.status == "approved":
                status.approved_reviews += 1
            elif review.status == "rejected":
                status.rejected_reviews += 1
            elif review.status == "needs_fixes":
                status.needs_fixes_reviews += 1
        return status

    def clear_completed_reviews(self) -> int:
        """Forget approved and rejected reviews and return how many were removed."""
        done = [
            rid for rid, r in self.reviews.items() if r.status in ("approved", "rejected")
        ]
        for rid in done:
            del self.reviews[rid]
        return len(done)