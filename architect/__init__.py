"""Story queue, spec-to-story conversion, question answering, code review and escalation for an agent architect."""

__version__ = "0.1.0"