"""Turn a markdown project specification into numbered story files."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

MAX_REQUIREMENTS = 1000
MAX_CONTENT_SIZE = 10 * 1024 * 1024

_HEADER_RE = re.compile(r"^(#{2,})[ \t\n\f\r]+(.+)")
_NUMBERED_START_RE = re.compile(r"^[0-9]+\.[ \t\n\f\r]")
_NUMBERED_ITEM_RE = re.compile(r"^[0-9]+\.[ \t\n\f\r]+(.+)")
_STORY_FILE_RE = re.compile(r"^([0-9]{3})\.md$")

_SKIP_PATTERNS = (
    "table of contents",
    "overview",
    "introduction",
    "background",
    "assumptions",
    "glossary",
    "references",
    "appendix",
    "notes",
    "changelog",
    "version",
    "project specification",
    "test project",
)

_HIGH_COMPLEXITY = (
    "integration",
    "authentication",
    "security",
    "database",
    "migration",
    "api gateway",
    "microservice",
    "deployment",
    "monitoring",
    "analytics",
)

_MEDIUM_COMPLEXITY = (
    "endpoint",
    "service",
    "component",
    "module",
    "interface",
    "configuration",
    "logging",
    "testing",
)

_DEFAULT_CRITERIA = (
    "Implementation completes successfully",
    "All tests pass",
    "Code follows project conventions",
)

_FIRST_STORY_ID = 50


class SpecError(Exception):
    """Raised when a specification cannot be read, parsed or turned into stories."""


@dataclass
class Requirement:
    """A requirement extracted from a specification section."""

    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    estimated_points: int = 0
    dependencies: list[str] = field(default_factory=list)


@dataclass
class StoryFile:
    """A story file written to the stories directory."""

    id: str
    title: str
    depends_on: list[str]
    est_points: int
    content: str
    file_path: str


def _append_line(requirement: Requirement, text: str) -> None:
    if requirement.description:
        requirement.description += "\n"
    requirement.description += text


class SpecParser:
    """Parses specifications into requirements and writes story files."""

    def __init__(self, stories_dir: str | Path) -> None:
        self.stories_dir = Path(stories_dir)

    def parse_spec_file(self, spec_file_path: str | Path) -> list[Requirement]:
        """Read a specification file and return its requirements."""
        try:
            raw = Path(spec_file_path).read_bytes()
        except OSError as exc:
            raise SpecError(f"failed to read spec file {spec_file_path}: {exc}") from exc
        return self.parse_spec_content(raw.decode("utf-8", errors="replace"))

    def parse_spec_content(self, content: str) -> list[Requirement]:
        """Extract requirements from the ``##`` sections of a specification."""
        if not content.strip():
            raise SpecError("empty spec content")

        size = len(content.encode("utf-8"))
        if size > MAX_CONTENT_SIZE:
            raise SpecError(
                f"spec content too large: {size} bytes (max {MAX_CONTENT_SIZE})"
            )

        requirements: list[Requirement] = []
        lines = content.split("\n")
        current: Requirement | None = None
        in_code_block = False
        in_criteria = False

        for index, raw_line in enumerate(lines):
            line = raw_line.strip()

            if line.startswith("```"):
                in_code_block = not in_code_block
                continue
            if in_code_block:
                continue

            header = _HEADER_RE.match(line)
            if header is not None:
                if current is not None:
                    requirements.append(current)

                title = header.group(2).strip()
                if self.should_skip_header(title):
                    current = None
                    continue

                current = Requirement(
                    title=title,
                    estimated_points=self.estimate_points(title, index, lines),
                )
                in_criteria = False
                continue

            if current is None:
                continue

            lowered = line.lower()
            if "acceptance criteria" in lowered or "requirements" in lowered:
                in_criteria = True
                continue

            if line.startswith("- ") or line.startswith("* "):
                criterion = line.removeprefix("- ").removeprefix("* ")
                if criterion:
                    if in_criteria:
                        current.acceptance_criteria.append(criterion)
                    else:
                        _append_line(current, "- " + criterion)
            elif line.startswith("1. ") or _NUMBERED_START_RE.match(line):
                item = _NUMBERED_ITEM_RE.match(line)
                if item is not None:
                    criterion = item.group(1).strip()
                    if in_criteria:
                        current.acceptance_criteria.append(criterion)
                    else:
                        _append_line(current, "- " + criterion)
            elif line and not line.startswith("#"):
                _append_line(current, line)

        if current is not None:
            requirements.append(current)

        if len(requirements) > MAX_REQUIREMENTS:
            raise SpecError(
                f"too many requirements: {len(requirements)} (max {MAX_REQUIREMENTS})"
            )
        return requirements

    def should_skip_header(self, title: str) -> bool:
        """True for headers that describe the document rather than a requirement."""
        lowered = title.lower()
        return any(pattern in lowered for pattern in _SKIP_PATTERNS)

    def estimate_points(self, title: str, line_num: int, lines: list[str]) -> int:
        """Estimate story points from title keywords and the section's length."""
        lowered = title.lower()
        if any(keyword in lowered for keyword in _HIGH_COMPLEXITY):
            return 3
        if any(keyword in lowered for keyword in _MEDIUM_COMPLEXITY):
            return 2

        content_lines = 0
        for raw_line in lines[line_num + 1 : line_num + 20]:
            line = raw_line.strip()
            if line.startswith("#"):
                break
            if line:
                content_lines += 1

        if content_lines > 10:
            return 3
        if content_lines > 5:
            return 2
        return 1

    def generate_story_files(self, requirements: list[Requirement]) -> list[StoryFile]:
        """Write one numbered story file per requirement and describe them."""
        try:
            self.stories_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SpecError(
                f"failed to create stories directory {self.stories_dir}: {exc}"
            ) from exc

        try:
            next_id = self.find_next_story_id()
        except SpecError as exc:
            raise SpecError(f"failed to determine next story ID: {exc}") from exc

        story_files: list[StoryFile] = []
        for offset, requirement in enumerate(requirements):
            story_id = f"{next_id + offset:03d}"
            content = self.generate_story_content(story_id, requirement)
            path = self.stories_dir / f"{story_id}.md"
            try:
                path.write_text(content, encoding="utf-8")
            except OSError as exc:
                raise SpecError(f"failed to write story file {path}: {exc}") from exc

            story_files.append(
                StoryFile(
                    id=story_id,
                    title=requirement.title,
                    depends_on=list(requirement.dependencies),
                    est_points=requirement.estimated_points,
                    content=content,
                    file_path=str(path),
                )
            )
        return story_files

    def find_next_story_id(self) -> int:
        """Return one past the highest ``NNN.md`` story number, at least 50."""
        if not self.stories_dir.exists():
            return _FIRST_STORY_ID

        try:
            entries = list(self.stories_dir.iterdir())
        except OSError as exc:
            raise SpecError(f"failed to read stories directory: {exc}") from exc

        highest = _FIRST_STORY_ID - 1
        for entry in entries:
            if entry.is_dir():
                continue
            match = _STORY_FILE_RE.match(entry.name)
            if match is not None:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    def generate_story_content(self, story_id: str, requirement: Requirement) -> str:
        """Render the markdown text, with front matter, for a story file."""
        dependencies = ", ".join(f'"{dep}"' for dep in requirement.dependencies)
        parts = [
            "---\n",
            f"id: {story_id}\n",
            f'title: "{requirement.title}"\n',
            f"depends_on: [{dependencies}]\n",
            f"est_points: {requirement.estimated_points}\n",
            "---\n\n",
            "**Task**\n",
            requirement.description or f"Implement: {requirement.title}",
            "\n\n",
            "**Acceptance Criteria**\n",
        ]
        criteria = requirement.acceptance_criteria or _DEFAULT_CRITERIA
        parts.extend(f"* {criterion}\n" for criterion in criteria)
        return "".join(parts)

    def process_spec_file(self, spec_file_path: str | Path) -> list[StoryFile]:
        """Parse a specification file and write a story file per requirement."""
        try:
            requirements = self.parse_spec_file(spec_file_path)
        except SpecError as exc:
            raise SpecError(f"failed to parse spec file: {exc}") from exc

        if not requirements:
            raise SpecError("no requirements found in spec file")

        try:
            return self.generate_story_files(requirements)
        except SpecError as exc:
            raise SpecError(f"failed to generate story files: {exc}") from exc