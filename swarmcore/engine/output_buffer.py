"""Bounded per-session line buffer with absolute line numbering.

Lines are addressed by absolute index (the count of lines ever
appended before them), so a response marker keeps pointing at the
right place after older lines are evicted. Eviction stops at an
active marker until the buffer reaches ``hard_cap``.
"""
from __future__ import annotations

from collections import deque

from .ansi import clean_for_chat, strip_ansi


class OutputBuffer:
    def __init__(self, max_lines: int = 1000, hard_cap: int | None = None) -> None:
        self.max_lines = max_lines
        self.hard_cap = hard_cap if hard_cap is not None else max_lines * 4
        self._lines: deque[str] = deque()
        # Absolute index of self._lines[0].
        self._base = 0
        # True when the last line has not seen its newline yet.
        self._open = False
        self._marker: int | None = None

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def base(self) -> int:
        return self._base

    @property
    def total_lines(self) -> int:
        """Absolute index one past the last stored line."""
        return self._base + len(self._lines)

    @property
    def marker(self) -> int | None:
        return self._marker

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        parts = chunk.replace("\r\n", "\n").split("\n")
        if self._open and self._lines:
            self._lines[-1] += parts[0]
        else:
            self._lines.append(parts[0])
        self._lines.extend(parts[1:])
        self._open = not chunk.endswith("\n")
        if not self._open and self._lines and self._lines[-1] == "":
            # The trailing empty piece after a final newline is not a line.
            self._lines.pop()
        self._evict()

    def _evict(self) -> None:
        while len(self._lines) > self.max_lines:
            if (
                self._marker is not None
                and self._base >= self._marker
                and len(self._lines) <= self.hard_cap
            ):
                break
            self._lines.popleft()
            self._base += 1

    def mark(self) -> int:
        """Start a new response region at the next line and return its index."""
        self._open = False
        self._marker = self.total_lines
        return self._marker

    def clear_marker(self) -> None:
        self._marker = None

    def lines_since(self, index: int) -> list[str]:
        start = max(index, self._base) - self._base
        return list(self._lines)[start:]

    def lines_since_marker(self) -> list[str]:
        if self._marker is None:
            return []
        return self.lines_since(self._marker)

    def tail(self, count: int) -> list[str]:
        if count <= 0:
            return []
        return list(self._lines)[-count:]

    def recent_text(self, max_chars: int | None = None) -> str:
        """ANSI-stripped text of the whole buffer, optionally tail-bounded."""
        text = strip_ansi("\n".join(self._lines))
        if max_chars is not None and len(text) > max_chars:
            return text[-max_chars:]
        return text

    def capture_task_response(self) -> str:
        """Cleaned output since the last mark(); consumes the marker."""
        if self._marker is None:
            return ""
        lines = self.lines_since_marker()
        self._marker = None
        return clean_for_chat("\n".join(lines))

    def clear(self) -> None:
        self._base += len(self._lines)
        self._lines.clear()
        self._open = False
        self._marker = None
