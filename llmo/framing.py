"""Newline framing for provider byte streams (stdout responses, stderr logs)."""

from __future__ import annotations

from typing import Callable


class LineBuffer:
    """
    Splits a byte stream into lines without letting one line grow unbounded.

    When the unterminated tail exceeds ``max_line`` bytes it is discarded,
    ``on_overflow`` is called once, and the rest of that line (up to its
    newline) is skipped.
    """

    def __init__(self, max_line: int, on_overflow: Callable[[], None] | None = None):
        self.max_line = max_line
        self._on_overflow = on_overflow
        self._buffer = bytearray()
        self._skipping = False

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer.extend(chunk)
        lines = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            if self._skipping:
                self._skipping = False
            else:
                lines.append(line)

        if len(self._buffer) > self.max_line:
            self._buffer.clear()
            if not self._skipping:
                self._skipping = True
                if self._on_overflow is not None:
                    self._on_overflow()
        return lines

    def __len__(self) -> int:
        return len(self._buffer)
