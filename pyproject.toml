[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "architect"
version = "0.1.0"
description = "Story queue, spec-to-story conversion, question handling, code review and escalation for a coding-agent architect."
requires-python = ">=3.10"
dependencies = []
keywords = ["agents", "orchestration", "stories", "code review", "escalation", "dependency graph"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["architect"]

[tool.pytest.ini_options]
addopts = "-ra"
