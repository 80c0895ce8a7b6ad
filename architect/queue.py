"""Story queue with front-matter loading and dependency resolution."""

from __future__ import annotations

import json
import logging
import queue as _stdqueue
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"^---\n(.*?)\n---", re.DOTALL)
_INTEGER_RE = re.compile(r"[+-]?\d+")


class StoryStatus(str, Enum):
    """Lifecycle states of a queued story."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_REVIEW = "waiting_review"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    AWAIT_HUMAN_FEEDBACK = "await_human_feedback"

    def __str__(self) -> str:
        return self.value


class QueueError(Exception):
    """Base error for queue operations."""


class StoryNotFoundError(QueueError):
    """Raised when a story id is not in the queue."""


class InvalidTransitionError(QueueError):
    """Raised when a story cannot move to the requested status."""


class FrontMatterError(QueueError, ValueError):
    """Raised when a story file's front matter is missing or incomplete."""


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
class QueuedStory:
    """A story tracked by the queue."""

    id: str = ""
    title: str = ""
    file_path: str = ""
    status: StoryStatus = StoryStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    estimated_points: int = 0
    assigned_agent: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping of the story."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "file_path": self.file_path,
            "status": StoryStatus(self.status).value,
            "depends_on": list(self.depends_on),
            "estimated_points": self.estimated_points,
        }
        if self.assigned_agent:
            data["assigned_agent"] = self.assigned_agent
        if self.started_at is not None:
            data["started_at"] = _format_time(self.started_at)
        if self.completed_at is not None:
            data["completed_at"] = _format_time(self.completed_at)
        data["last_updated"] = _format_time(self.last_updated)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedStory":
        """Build a story from a mapping produced by :meth:`to_dict`."""
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            file_path=data.get("file_path", ""),
            status=StoryStatus(data.get("status") or StoryStatus.PENDING.value),
            depends_on=list(data.get("depends_on") or []),
            estimated_points=int(data.get("estimated_points", 0)),
            assigned_agent=data.get("assigned_agent", "") or "",
            started_at=_parse_time(data.get("started_at")),
            completed_at=_parse_time(data.get("completed_at")),
            last_updated=_parse_time(data.get("last_updated")),
        )


def parse_string_array(value: str) -> list[str]:
    """Parse a YAML-style inline list such as ``[a, "b", 'c']``."""
    value = value.strip()
    if value in ("", "[]"):
        return []
    items = (part.strip().strip("\"'") for part in value.strip("[]").split(","))
    return [item for item in items if item]


def parse_estimated_points(value: str) -> int:
    """Parse story points; out-of-range values (outside 1-5) become 2."""
    value = value.strip()
    if not _INTEGER_RE.fullmatch(value):
        raise ValueError(f"invalid estimated points value: {value}")
    points = int(value)
    if points < 1 or points > 5:
        return 2
    return points


def parse_front_matter(content: str) -> QueuedStory:
    """Extract id, title, dependencies and points from a story's front matter."""
    match = _FRONT_MATTER_RE.match(content)
    if match is None:
        raise FrontMatterError("no front-matter found")

    story = QueuedStory()
    for raw_line in match.group(1).split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "id":
            story.id = value
        elif key == "title":
            story.title = value.strip('"')
        elif key == "depends_on":
            story.depends_on = parse_string_array(value)
        elif key == "est_points":
            try:
                story.estimated_points = parse_estimated_points(value)
            except ValueError:
                pass

    if not story.id:
        raise FrontMatterError("missing required field: id")
    if not story.title:
        raise FrontMatterError("missing required field: title")
    return story


class Queue:
    """Holds the architect's stories and resolves which are ready to work on."""

    def __init__(self, stories_dir: str | Path) -> None:
        self.stories_dir = Path(stories_dir)
        self._stories: dict[str, QueuedStory] = {}
        self._ready_channel: _stdqueue.Queue | None = None

    def __len__(self) -> int:
        return len(self._stories)

    def set_ready_channel(self, channel: _stdqueue.Queue | None) -> None:
        """Set the queue that receives ids of stories as they become ready."""
        self._ready_channel = channel

    def add_story(self, story: QueuedStory) -> None:
        """Add or replace a story, keyed by its id."""
        self._stories[story.id] = story

    def load_from_directory(self) -> None:
        """Load every ``*.md`` story file in the stories directory."""
        if not self.stories_dir.exists():
            return

        for path in sorted(self.stories_dir.glob("*.md")):
            try:
                story = self.parse_story_file(path)
            except (OSError, FrontMatterError) as exc:
                logger.warning("failed to parse story file %s: %s", path, exc)
                continue

            existing = self._stories.get(story.id)
            now = _utcnow()
            if existing is None:
                story.status = StoryStatus.PENDING
                story.last_updated = now
                self._stories[story.id] = story
            else:
                existing.title = story.title
                existing.depends_on = story.depends_on
                existing.estimated_points = story.estimated_points
                existing.file_path = story.file_path
                existing.last_updated = now

        self._notify_ready()

    def parse_story_file(self, file_path: str | Path) -> QueuedStory:
        """Read a story markdown file and return the story it describes."""
        content = Path(file_path).read_text(encoding="utf-8")
        story = parse_front_matter(content)
        story.file_path = str(file_path)
        return story

    def next_ready_story(self) -> QueuedStory | None:
        """Return the ready story with the fewest points (ties by id), or None."""
        ready = self.ready_stories()
        if not ready:
            return None
        return min(ready, key=lambda s: (s.estimated_points, s.id))

    def ready_stories(self) -> list[QueuedStory]:
        """Return pending stories whose dependencies are all completed."""
        return [
            story
            for story in self._stories.values()
            if story.status == StoryStatus.PENDING and self._dependencies_met(story)
        ]

    def all_stories_completed(self) -> bool:
        """True if every story is completed or cancelled."""
        return all(
            story.status in (StoryStatus.COMPLETED, StoryStatus.CANCELLED)
            for story in self._stories.values()
        )

    def _dependencies_met(self, story: QueuedStory) -> bool:
        for dep_id in story.depends_on:
            dep = self._stories.get(dep_id)
            if dep is None or dep.status != StoryStatus.COMPLETED:
                return False
        return True

    def _require(self, story_id: str) -> QueuedStory:
        story = self._stories.get(story_id)
        if story is None:
            raise StoryNotFoundError(f"story {story_id} not found")
        return story

    def mark_in_progress(self, story_id: str, agent_id: str) -> None:
        """Assign a pending story to an agent and start it."""
        story = self._require(story_id)
        if story.status != StoryStatus.PENDING:
            raise InvalidTransitionError(
                f"story {story_id} is not in pending status (current: {story.status})"
            )
        now = _utcnow()
        story.status = StoryStatus.IN_PROGRESS
        story.assigned_agent = agent_id
        story.started_at = now
        story.last_updated = now

    def mark_waiting_review(self, story_id: str) -> None:
        """Move an in-progress story to waiting for review."""
        story = self._require(story_id)
        if story.status != StoryStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"story {story_id} is not in progress (current: {story.status})"
            )
        story.status = StoryStatus.WAITING_REVIEW
        story.last_updated = _utcnow()

    def mark_completed(self, story_id: str) -> None:
        """Complete a story that is in progress or waiting for review."""
        story = self._require(story_id)
        if story.status not in (StoryStatus.IN_PROGRESS, StoryStatus.WAITING_REVIEW):
            raise InvalidTransitionError(
                f"story {story_id} is not in a completable status (current: {story.status})"
            )
        now = _utcnow()
        story.status = StoryStatus.COMPLETED
        story.completed_at = now
        story.last_updated = now
        self._notify_ready()

    def _notify_ready(self) -> None:
        if self._ready_channel is None:
            return
        for story in self._stories.values():
            if story.status == StoryStatus.PENDING and self._dependencies_met(story):
                try:
                    self._ready_channel.put_nowait(story.id)
                except _stdqueue.Full:
                    continue
                logger.info("story %s is ready", story.id)

    def mark_blocked(self, story_id: str) -> None:
        """Mark a story as blocked."""
        story = self._require(story_id)
        story.status = StoryStatus.BLOCKED
        story.last_updated = _utcnow()

    def mark_await_human_feedback(self, story_id: str) -> None:
        """Mark a story as awaiting human feedback."""
        story = self._require(story_id)
        story.status = StoryStatus.AWAIT_HUMAN_FEEDBACK
        story.last_updated = _utcnow()

    def get_story(self, story_id: str) -> QueuedStory | None:
        """Return the story with this id, or None."""
        return self._stories.get(story_id)

    def all_stories(self) -> list[QueuedStory]:
        """Return all stories sorted by id."""
        return sorted(self._stories.values(), key=lambda s: s.id)

    def stories_by_status(self, status: StoryStatus) -> list[QueuedStory]:
        """Return stories in the given status, sorted by id."""
        return sorted(
            (s for s in self._stories.values() if s.status == status),
            key=lambda s: s.id,
        )

    def detect_cycles(self) -> list[list[str]]:
        """Return dependency cycles found, each as a path ending where it started."""
        cycles: list[list[str]] = []
        visited: set[str] = set()
        on_stack: set[str] = set()
        for story_id in list(self._stories):
            if story_id not in visited:
                cycle = self._find_cycle(story_id, visited, on_stack, [])
                if cycle:
                    cycles.append(cycle)
        return cycles

    def _find_cycle(
        self, story_id: str, visited: set[str], on_stack: set[str], path: list[str]
    ) -> list[str]:
        visited.add(story_id)
        on_stack.add(story_id)
        path = [*path, story_id]

        story = self._stories.get(story_id)
        if story is None:
            return []

        for dep_id in story.depends_on:
            if dep_id not in visited:
                cycle = self._find_cycle(dep_id, visited, on_stack, path)
                if cycle:
                    return cycle
            elif dep_id in on_stack and dep_id in path:
                return path[path.index(dep_id):] + [dep_id]

        on_stack.discard(story_id)
        return []

    def to_json(self) -> str:
        """Serialise all stories, sorted by id, as indented JSON."""
        return json.dumps([s.to_dict() for s in self.all_stories()], indent=2)

    def from_json(self, data: str | bytes) -> None:
        """Replace the queue's stories with those in a JSON document."""
        try:
            items = json.loads(data)
            stories = [QueuedStory.from_dict(item) for item in items or []]
        except (ValueError, TypeError, AttributeError) as exc:
            raise QueueError(f"failed to unmarshal queue JSON: {exc}") from exc
        self._stories = {story.id: story for story in stories}

    def summary(self) -> dict[str, Any]:
        """Return counts, points, readiness and cycle information for the queue."""
        status_counts: dict[StoryStatus, int] = {}
        total_points = 0
        completed_points = 0
        for story in self._stories.values():
            status_counts[story.status] = status_counts.get(story.status, 0) + 1
            total_points += story.estimated_points
            if story.status == StoryStatus.COMPLETED:
                completed_points += story.estimated_points

        cycles = self.detect_cycles()
        return {
            "total_stories": len(self._stories),
            "status_counts": status_counts,
            "total_points": total_points,
            "completed_points": completed_points,
            "ready_stories": len(self.ready_stories()),
            "has_cycles": bool(cycles),
            "cycles": cycles,
        }