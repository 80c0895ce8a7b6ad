"""Small text helpers shared by the architect components."""


def truncate_string(s: str, max_length: int) -> str:
    """Return ``s`` cut to ``max_length`` characters, with "..." appended if it was cut."""
    if len(s) <= max_length:
        return s
    return s[:max_length] + "..."