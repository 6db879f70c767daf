"""Semaphores limiting the number of requests processed at once."""

from __future__ import annotations

import queue
import threading


class NoopSemaphore:
    """A semaphore without a limit: it never blocks, only counts its holders."""

    def __init__(self) -> None:
        self._held = 0
        self._lock = threading.Lock()

    @property
    def held(self) -> int:
        """Number of acquisitions not yet released."""
        with self._lock:
            return self._held

    def acquire(self) -> None:
        with self._lock:
            self._held += 1

    def release(self) -> None:
        with self._lock:
            if self._held:
                self._held -= 1

    def __enter__(self) -> "NoopSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class LimitSemaphore:
    """Bounded semaphore: acquire blocks when full, release never blocks."""

    def __init__(self, max_res: int) -> None:
        self._slots: queue.Queue = queue.Queue(maxsize=max_res)

    def acquire(self) -> None:
        self._slots.put(None)

    def release(self) -> None:
        try:
            self._slots.get_nowait()
        except queue.Empty:
            pass

    def __enter__(self) -> "LimitSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def new_semaphore(max_res: int) -> LimitSemaphore:
    """Return a semaphore allowing ``max_res`` holders; ``max_res`` must be positive."""
    if max_res < 1:
        raise ValueError(f"bad maxRes: {max_res}")
    return LimitSemaphore(max_res)