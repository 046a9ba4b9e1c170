import threading


class IdAllocator:
    """Thread-safe monotonic id source owned by a map session."""

    def __init__(self, start: int = 0):
        self._start = start
        self._next = start
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    def peek(self) -> int:
        with self._lock:
            return self._next

    def advance_past(self, used_id: int):
        """Make sure ``used_id`` is never handed out again."""
        with self._lock:
            self._next = max(self._next, used_id + 1)

    def reset(self):
        with self._lock:
            self._next = self._start
