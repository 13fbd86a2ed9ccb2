from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import Counter, deque
from collections.abc import Callable, Hashable

from listener_controller.src.metrics import METRICS


class RateLimitingQueue:
    """Thread-safe work queue with de-duplication, delays and per-item backoff.

    Semantics follow the client-go work queue:

    * an item queued several times before a worker picks it up is handed
      out once;
    * an item is never processed by two workers at once: re-adding it
      while it is being processed re-queues it when :meth:`done` is called;
    * :meth:`add_rate_limited` delays the item by ``base * 2**failures``
      seconds (capped at ``max_delay``) until :meth:`forget` resets it.
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready_at: dict[Hashable, float] = {}
        self._failures: Counter[Hashable] = Counter()
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            ready_at = self._clock() + delay
            current = self._waiting_ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._cond.notify()

    def when(self, item: Hashable) -> float:
        exponent = self._failures[item]
        self._failures[item] += 1
        return min(self.base_delay * 2**exponent, self.max_delay)

    def add_rate_limited(self, item: Hashable) -> None:
        with self._cond:
            delay = self.when(item)
        METRICS.queue_retries_total.inc()
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures[item]

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if self._waiting_ready_at.get(item) != ready_at:
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._waiting_ready_at[item]
            self._add_locked(item)
        return None

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is ready; return ``(item, shutdown)``.

        ``(None, False)`` means *timeout* elapsed with nothing to do.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    METRICS.queue_depth.set(len(self._queue))
                    return item, False
                if self._shutting_down:
                    return None, True
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down
