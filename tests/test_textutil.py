import pytest

from architect.textutil import truncate_string


@pytest.mark.parametrize(
    ("text", "max_length", "expected"),
    [
        ("short", 10, "short"),
        ("this is a long string", 10, "this is a ..."),
        ("exact", 5, "exact"),
        ("", 5, ""),
    ],
)
def test_truncate_string(text, max_length, expected):
    assert truncate_string(text, max_length) == expected


def test_truncated_result_keeps_prefix():
    result = truncate_string("abcdefghij", 3)
    assert result == "abc..."
    assert result.startswith("abc")