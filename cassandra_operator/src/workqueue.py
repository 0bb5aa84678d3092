from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from cassandra_operator.src.metrics import METRICS


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**63 and beyond overflows a float multiplication long before it
        # matters; every realistic cap is reached well before that.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Token bucket shared by all keys.

    Bounds the overall retry rate so a burst of failing keys cannot hammer the
    API server even when each key's own backoff is still short.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: str) -> int:
        return 0

    def forget(self, item: str) -> None:
        return None


class MaxOfRateLimiter:
    """Combine several limiters; the longest delay wins."""

    def __init__(self, *limiters: ItemExponentialFailureRateLimiter | BucketRateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Deduplicating work queue of reconciliation keys with delayed and rate-limited adds.

    Guarantees:
        * A key is pending at most once: repeated ``add`` calls before the key
          is handed out by ``get`` collapse into one.
        * A key handed out by ``get`` is *processing* until ``done``.  It is
          never handed to a second worker in the meantime; an ``add`` that
          arrives while it is processing marks it dirty and ``done``
          re-queues it for a follow-up pass.
        * ``get`` blocks until a key is available.  After ``shut_down`` it
          keeps handing out the remaining keys and returns
          ``(None, True)`` once the queue is drained.

    Key internal state:
        ``_queue``
            FIFO of keys ready to be handed out.
        ``_dirty``
            Keys that need processing (queued, or re-added while processing).
        ``_processing``
            Keys currently held by a worker.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for delayed adds, drained by a
            lazily started daemon thread.  ``_waiting_ready_at`` holds the
            authoritative ready time per key; heap entries that disagree
            with it are stale and skipped.
    """

    def __init__(
        self,
        rate_limiter: MaxOfRateLimiter | ItemExponentialFailureRateLimiter | BucketRateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._lock = threading.Lock()
        self._items_available = threading.Condition(self._lock)
        self._waiting_changed = threading.Condition(self._lock)

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._waiting_thread: threading.Thread | None = None
        self._shutting_down = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._items_available.notify()

    def add(self, key: str) -> None:
        with self._lock:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Make *key* available after *delay* seconds.

        If the key is already waiting with an earlier ready time, the earlier
        time is kept.
        """
        if delay <= 0:
            self.add(key)
            return

        with self._lock:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            if self._waiting_thread is None:
                self._waiting_thread = threading.Thread(
                    target=self._waiting_loop,
                    name=f"workqueue-{self.name or 'default'}-delay",
                    daemon=True,
                )
                self._waiting_thread.start()
            self._waiting_changed.notify()

    def add_rate_limited(self, key: str) -> None:
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def get(self) -> tuple[str | None, bool]:
        with self._lock:
            while not self._queue and not self._shutting_down:
                self._items_available.wait()
            if not self._queue:
                return None, True

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, False

    def done(self, key: str) -> None:
        with self._lock:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._update_depth()
                self._items_available.notify()

    def shut_down(self) -> None:
        with self._lock:
            self._shutting_down = True
            self._items_available.notify_all()
            self._waiting_changed.notify_all()

    def shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def _waiting_loop(self) -> None:
        with self._lock:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    if self._waiting_ready_at.get(key) != ready_at:
                        continue
                    del self._waiting_ready_at[key]
                    self._add_locked(key)

                timeout = self._waiting[0][0] - now if self._waiting else None
                self._waiting_changed.wait(timeout=timeout)
