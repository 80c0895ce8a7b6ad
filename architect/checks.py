"""Automated format, lint and test checks run against a workspace through make."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Protocol

from architect.queue import QueuedStory

logger = logging.getLogger(__name__)

CODE_REVIEW_TEMPLATE = "code_review"

# check type -> (make targets tried in order, error prefix on failure)
_CHECK_TARGETS: dict[str, tuple[tuple[str, ...], str]] = {
    "format": (("format", "fmt"), "format check failed"),
    "lint": (("lint", "check"), "lint issues found"),
    "test": (("test", "tests"), "tests failed"),
}


class CheckError(Exception):
    """Raised when an automated check fails or cannot be run."""


class _LLMClient(Protocol):
    def generate_response(self, prompt: str) -> str: ...


class _Renderer(Protocol):
    def render(self, template: str, data: dict[str, Any]) -> str: ...


def _run_combined(args: list[str], work_dir: str | Path) -> tuple[bool, str]:
    """Run a command and return whether it succeeded and its combined output."""
    try:
        proc = subprocess.run(
            args,
            cwd=str(work_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        return False, str(exc)
    return proc.returncode == 0, proc.stdout or ""


def command_exists(cmd: str) -> bool:
    """True if ``cmd`` can be found on the PATH."""
    return shutil.which(cmd) is not None


def make_target_exists(work_dir: str | Path, target: str) -> bool:
    """True if ``make -n target`` succeeds in ``work_dir``."""
    try:
        proc = subprocess.run(
            ["make", "-n", target],
            cwd=str(work_dir),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    return proc.returncode == 0


def available_make_targets(work_dir: str | Path) -> list[str]:
    """List the make targets defined in ``work_dir``, as reported by ``make -qp``."""
    try:
        proc = subprocess.run(
            ["make", "-qp"],
            cwd=str(work_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError:
        return ["No Makefile found"]
    if proc.returncode != 0:
        return ["No Makefile found"]

    targets: list[str] = []
    for raw_line in (proc.stdout or "").split("\n"):
        line = raw_line.strip()
        if ":" not in line or line.startswith("#") or line.startswith("."):
            continue
        target = line.split(":")[0].strip()
        if target and " " not in target:
            targets.append(target)

    return targets or ["No targets found"]


def run_make_check(check_type: str, work_dir: str | Path) -> bool:
    """Run the first available make target for a check; True if it passed or none exist."""
    try:
        candidates, error_prefix = _CHECK_TARGETS[check_type]
    except KeyError:
        raise CheckError(f"unknown check type: {check_type}") from None

    for target in candidates:
        if command_exists("make") and make_target_exists(work_dir, target):
            ok, output = _run_combined(["make", target], work_dir)
            if not ok:
                logger.warning("%s check failed: %s", check_type, output)
                raise CheckError(f"{error_prefix}: {output}")
            logger.info("%s check passed using make %s", check_type, target)
            return True

    logger.warning("no %s make targets available, skipping %s check", check_type, check_type)
    return True


def format_tool_invocation_context(
    work_dir: str | Path, check_type: str, story: QueuedStory
) -> str:
    """Describe the workspace and check for a tool-invocation prompt."""
    text = (
        "Tool Invocation Context:\n"
        f"- Check Type: {check_type}\n"
        f"- Workspace Directory: {work_dir}\n"
        f"- Story ID: {story.id}\n"
        f"- Story Title: {story.title}\n"
        "\n"
        "Available Make Targets:"
    )
    for target in available_make_targets(work_dir):
        text += f"\n- {target}"

    text += "\n\nProject Structure Detection:"
    root = Path(work_dir)
    if (root / "go.mod").is_file():
        text += "\n- Go project detected (go.mod found)"
    if (root / "package.json").is_file():
        text += "\n- Node.js project detected (package.json found)"
    if (root / "requirements.txt").is_file() or (root / "pyproject.toml").is_file():
        text += "\n- Python project detected"
    if (root / "Cargo.toml").is_file():
        text += "\n- Rust project detected (Cargo.toml found)"
    return text


def execute_llm_tool_response(work_dir: str | Path, check_type: str, response: str) -> bool:
    """Run the first ``make`` command found in an LLM response; True if it passed or none."""
    for raw_line in response.split("\n"):
        line = raw_line.strip()
        if not line.startswith("make "):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        ok, output = _run_combined(parts, work_dir)
        if not ok:
            logger.warning("LLM-recommended command failed: %s\nOutput: %s", line, output)
            raise CheckError(f"LLM-recommended {check_type} check failed: {output}")
        logger.info("LLM-recommended command succeeded: %s", line)
        return True

    logger.warning("no executable commands found in LLM response, using fallback")
    return True


def run_llm_tool_invocation(
    llm_client: _LLMClient,
    renderer: _Renderer,
    work_dir: str | Path,
    check_type: str,
    story: QueuedStory,
) -> bool:
    """Ask the LLM which tool to run for a check, then run it."""
    data = {
        "task_content": f"Execute {check_type} check for story {story.id}",
        "context": format_tool_invocation_context(work_dir, check_type, story),
        "extra": {
            "check_type": check_type,
            "workspace_dir": str(work_dir),
            "story_id": story.id,
            "story_title": story.title,
        },
    }
    try:
        prompt = renderer.render(CODE_REVIEW_TEMPLATE, data)
    except Exception as exc:
        raise CheckError(f"failed to render code review template: {exc}") from exc
    try:
        response = llm_client.generate_response(prompt)
    except Exception as exc:
        raise CheckError(
            f"failed to get LLM response for tool invocation: {exc}"
        ) from exc
    return execute_llm_tool_response(work_dir, check_type, response)