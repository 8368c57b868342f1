"""Thread coordination helpers: cancellation, progress and row distribution."""

from __future__ import annotations

import threading
from typing import Iterator, Optional


class Aborted(Exception):
    """Raised when processing is cancelled."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


def check_cancel(stop_event) -> None:
    """Raise :class:`Aborted` if ``stop_event`` is set; ``None`` never cancels."""
    if stop_event is not None and stop_event.is_set():
        raise Aborted()


class ProgressCounter:
    """A counter that several threads may increment safely."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    def value(self) -> int:
        with self._lock:
            return self._value


class Slices:
    """Hands out image rows to worker threads, each row exactly once."""

    def __init__(self, height: int = 0) -> None:
        self._lock = threading.Lock()
        self._height = height
        self._next = 0

    @property
    def height(self) -> int:
        return self._height

    def init(self, height: int) -> None:
        with self._lock:
            self._height = height
            self._next = 0

    def reset(self) -> None:
        with self._lock:
            self._next = 0

    def get(self) -> Optional[int]:
        """Claim the next row, or return ``None`` when all rows are taken."""
        with self._lock:
            if self._next >= self._height:
                return None
            row = self._next
            self._next += 1
            return row

    def __iter__(self) -> Iterator[int]:
        while (row := self.get()) is not None:
            yield row