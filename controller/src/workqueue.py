from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from controller.src.metrics import METRICS


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    The delay for a key never decreases until :meth:`forget` resets it, so a
    key that keeps failing is retried with non-decreasing backoff.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        # 2**63 seconds is far beyond any sane cap; avoid float overflow.
        if exponent > 62:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class RateLimitingQueue:
    """Deduplicating FIFO of reconciliation keys with delayed and rate-limited adds.

    Guarantees:

    * A key added several times before a worker picks it up is queued once
      (``_dirty`` tracks keys that still need processing).
    * A key is never handed to two workers at once. Adding a key that is
      being processed only marks it dirty; :meth:`done` re-queues it.
    * After :meth:`shut_down`, adds are ignored and :meth:`get` returns
      ``None`` immediately, so nothing new is dequeued while in-flight work
      finishes.

    Delayed adds sit in a heap ordered by due time and are promoted into the
    FIFO by whichever caller of :meth:`get` observes them due.
    """

    def __init__(
        self,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_due: dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        METRICS.queue_adds_total.inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add ``key`` once ``delay`` seconds have passed; an earlier pending due time wins."""
        if delay <= 0:
            self.add(key)
            return

        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            existing_due = self._waiting_due.get(key)
            if existing_due is not None and existing_due <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            # Wake a blocked get() so it recomputes its wait deadline.
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def _promote_due_locked(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            due_at, _, key = heapq.heappop(self._waiting)
            if self._waiting_due.get(key) != due_at:
                # Superseded by an earlier due time for the same key.
                continue
            del self._waiting_due[key]
            self._add_locked(key)

    def _next_wait_locked(self, now: float) -> float | None:
        while self._waiting and self._waiting_due.get(self._waiting[0][2]) != self._waiting[0][0]:
            heapq.heappop(self._waiting)
        if not self._waiting:
            return None
        return max(0.0, self._waiting[0][0] - now)

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available and mark it as processing.

        Returns ``None`` when the queue is shut down or ``timeout`` expires.
        Every returned key must be passed to :meth:`done`.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None

                now = self._clock()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    METRICS.queue_depth.set(len(self._queue))
                    return key

                wait_for = self._next_wait_locked(now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_due.clear()
            self._cond.notify_all()
