"""
Bounded replay buffer for terminal output.

Output is kept as raw chunks (escape sequences intact) and bounded by line
count. When the total number of newlines exceeds the limit, whole chunks are
evicted from the front; a single chunk that alone exceeds the limit is
trimmed at a newline so the buffer still ends with the most recent lines.
"""

from collections import deque

from core.config import DEFAULT_REPLAY_LINES


class ReplayBuffer:
    def __init__(self, max_lines: int = DEFAULT_REPLAY_LINES):
        if max_lines < 1:
            raise ValueError("max_lines must be positive")
        self.max_lines = max_lines
        self._chunks: deque[tuple[bytes, int]] = deque()
        self._lines = 0
        self._size = 0

    def append(self, data: bytes) -> None:
        if not data:
            return
        newlines = data.count(b"\n")
        if newlines > self.max_lines:
            # keep only the last max_lines newlines worth of output
            cut = len(data)
            for _ in range(self.max_lines + 1):
                cut = data.rindex(b"\n", 0, cut)
            data = data[cut + 1:]
            newlines = self.max_lines
            self.clear()

        self._chunks.append((data, newlines))
        self._lines += newlines
        self._size += len(data)

        while self._lines > self.max_lines and len(self._chunks) > 1:
            old, old_lines = self._chunks.popleft()
            self._lines -= old_lines
            self._size -= len(old)

    def snapshot(self) -> bytes:
        return b"".join(chunk for chunk, _ in self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._lines = 0
        self._size = 0

    @property
    def size(self) -> int:
        """Buffered bytes."""
        return self._size

    @property
    def lines(self) -> int:
        return self._lines
