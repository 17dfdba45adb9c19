from __future__ import annotations

from collections import deque
from threading import Condition, Timer, current_thread


class WorkQueue:
    """Keyed work queue.

    A key is queued at most once, and a key being processed is never handed
    to a second worker; adds made meanwhile are replayed by done().
    """

    def __init__(self, backoff_base_s: float = 1.0, backoff_max_s: float = 300.0):
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self._cond = Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[Timer] = set()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> str | None:
        """Next key to process, or None on shutdown/timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutdown, timeout):
                return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._dirty.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutdown:
                self._queue.append(key)
                self._cond.notify()

    def processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def add_after(self, key: str, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            timer = Timer(delay_s, self._fire, args=(key,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, key: str) -> None:
        with self._cond:
            self._timers.discard(current_thread())
        self.add(key)

    def backoff(self, key: str) -> float:
        with self._cond:
            n = self._failures.get(key, 0)
        return min(self.backoff_base_s * (2**n), self.backoff_max_s)

    def add_rate_limited(self, key: str) -> float:
        """Requeue after an exponentially growing per-key delay; returns the delay."""
        with self._cond:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        delay = min(self.backoff_base_s * (2**n), self.backoff_max_s)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            timers, self._timers = self._timers, set()
            self._cond.notify_all()
        for t in timers:
            t.cancel()
