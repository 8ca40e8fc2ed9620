"""Tests for newline framing of provider streams."""

from llmo.framing import LineBuffer


def test_splits_lines_across_chunks():
    lines = LineBuffer(100)
    assert lines.feed(b"one\ntw") == [b"one"]
    assert lines.feed(b"o\nthree\n") == [b"two", b"three"]
    assert len(lines) == 0


def test_overlong_line_is_skipped_up_to_its_newline():
    overflows = []
    lines = LineBuffer(10, on_overflow=lambda: overflows.append(1))

    assert lines.feed(b"a" * 8) == []
    assert lines.feed(b"a" * 8) == []
    assert lines.feed(b"a" * 20) == []
    assert lines.feed(b"rest\nnext\n") == [b"next"]
    assert overflows == [1]


def test_overflow_reported_once_per_line():
    overflows = []
    lines = LineBuffer(4, on_overflow=lambda: overflows.append(1))
    lines.feed(b"123456\n")
    lines.feed(b"abcdefgh")
    lines.feed(b"\nok\n")
    # A line that arrives whole with its newline is not capped.
    assert overflows == [1]
