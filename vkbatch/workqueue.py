"""A work queue with delayed and rate-limited re-adds."""

from __future__ import annotations

import collections
import heapq
import itertools
import threading
import time
from typing import Any, Hashable


class RateLimitingQueue:
    """FIFO queue of unique items with per-item backoff.

    An item is handed to at most one consumer at a time: re-adding it while
    it is being processed queues it again once ``done`` is called.
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        qps: float = 10.0,
        burst: int = 100,
    ) -> None:
        self._cond = threading.Condition()
        self._queue: collections.deque[Hashable] = collections.deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._qps = qps
        self._burst = float(burst)
        self._tokens = float(burst)
        self._last_refill = time.monotonic()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if item is None:
            raise ValueError("None cannot be queued")
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add the item once ``delay`` seconds have passed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            ready = time.monotonic() + delay
            current = self._waiting_ready.get(item)
            if current is not None and current <= ready:
                return
            self._waiting_ready[item] = ready
            heapq.heappush(self._waiting, (ready, next(self._seq), item))
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        """Add the item after its backoff, which grows with each call."""
        with self._cond:
            delay = self._when(item)
            self.add_after(item, delay)

    def _when(self, item: Hashable) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        if failures > 64:
            backoff = self._max_delay
        else:
            backoff = min(self._base_delay * (2**failures), self._max_delay)

        now = time.monotonic()
        self._tokens = min(
            self._burst, self._tokens + (now - self._last_refill) * self._qps
        )
        self._last_refill = now
        self._tokens -= 1
        bucket = 0.0 if self._tokens >= 0 else -self._tokens / self._qps
        return max(backoff, bucket)

    def forget(self, item: Hashable) -> None:
        """Reset the backoff of an item."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def _promote_due_locked(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            ready, _, item = heapq.heappop(self._waiting)
            if self._waiting_ready.get(item) == ready:
                del self._waiting_ready[item]
                self._add_locked(item)

    def get(self, timeout: float | None = None) -> Any:
        """Take the next item, blocking until one is ready.

        Returns None once the queue is shut down and has nothing left to give.
        Raises TimeoutError if ``timeout`` seconds pass without an item.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                self._promote_due_locked(now)
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item
                if self._shutting_down:
                    return None
                wait = self._waiting[0][0] - now if self._waiting else None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        raise TimeoutError("no item became ready in time")
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, item: Hashable) -> None:
        """Mark an item as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)