from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from reloader.src.metrics import METRICS
from reloader.src.models import ObjectKey


class WorkQueue:
    """Thread-safe queue of reconciliation requests keyed by object identity.

    Guarantees:
        * A key handed out by :meth:`get` is not handed out again until
          :meth:`done` is called for it, so one object is reconciled by at
          most one worker at a time.  Other keys keep flowing.
        * Every :meth:`add` is kept; repeated changes are not coalesced.
        * :meth:`add_rate_limited` re-adds a failed key after a bounded
          exponential delay (1 s, 2 s, 4 s ... capped at ``max_backoff_seconds``).
          :meth:`forget` resets the delay once the key succeeds.
    """

    def __init__(
        self,
        max_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: deque[ObjectKey] = deque()
        self._delayed: list[tuple[float, int, ObjectKey]] = []
        self._sequence = itertools.count()
        self._processing: set[ObjectKey] = set()
        self._failures: dict[ObjectKey, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def _update_depth_locked(self) -> None:
        METRICS.queue_depth.set(len(self._ready) + len(self._delayed))

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._ready.append(key)
            self._update_depth_locked()
            self._cond.notify_all()

    def add_after(self, key: ObjectKey, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._update_depth_locked()
            self._cond.notify_all()

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Schedule a retry of *key* and return the delay that was applied."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay_seconds = min(self.max_backoff_seconds, float(2 ** (attempt - 1)))
        self.add_after(key, delay_seconds)
        return delay_seconds

    def retries(self, key: ObjectKey) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: ObjectKey) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def has_pending(self, key: ObjectKey) -> bool:
        """Return True when a not-yet-started request for *key* is queued."""
        with self._cond:
            return key in self._ready or any(item[2] == key for item in self._delayed)

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._ready.append(key)

    def _take_locked(self) -> ObjectKey | None:
        for position, key in enumerate(self._ready):
            if key not in self._processing:
                del self._ready[position]
                self._processing.add(key)
                self._update_depth_locked()
                return key
        return None

    def get(self, timeout: float | None = None) -> ObjectKey | None:
        """Block until a key is available, the timeout elapses, or the queue shuts down.

        Returns ``None`` on timeout or shutdown.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_due_locked()
                key = self._take_locked()
                if key is not None:
                    return key

                now = self._clock()
                wait_for: float | None = None
                if self._delayed:
                    wait_for = max(0.0, self._delayed[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
