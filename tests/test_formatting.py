"""Tests for formatting utilities."""

import pytest

from stale_hunter.formatting import format_bytes, format_duration, format_idle, format_since


@pytest.mark.parametrize(
    "value,expected",
    [
        (0, "0 B"),
        (512, "512 B"),
        (1536, "1.5 KB"),
        (500 * 1024 * 1024, "500.0 MB"),
        (int(2.5 * 1024**3), "2.5 GB"),
        (-5, "0 B"),
        (3 * 1024**5, "3072.0 TB"),
    ],
)
def test_format_bytes(value: int, expected: str) -> None:
    assert format_bytes(value) == expected


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (0, "just now"),
        (59, "just now"),
        (60, "1m"),
        (45 * 60, "45m"),
        (3600 + 5 * 60, "1h 5m"),
        (26 * 3600, "1d 2h"),
        (-10, "just now"),
    ],
)
def test_format_idle(seconds: float, expected: str) -> None:
    assert format_idle(seconds) == expected


def test_format_since() -> None:
    assert format_since(1000.0, now=1000.0 + 12 * 60) == "12m ago"
    assert format_since(1000.0, now=1010.0) == "just now"


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0s"), (45.7, "45s"), (12 * 60, "12m"), (3600 + 5 * 60, "1h 5m"), (-3, "0s")],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected
