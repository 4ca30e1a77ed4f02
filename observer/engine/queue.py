"""
Deduplicating work queue with per-key exclusivity and delayed re-adds.

Semantics follow the client-go work queue the controllers are modelled on:

* a key added several times before a worker picks it up is processed once;
* a key is never handed to two workers at the same time; adding a key that is
  being processed marks it dirty and it is queued again when ``done`` is called;
* ``add_rate_limited`` re-adds with a per-key exponential backoff that is reset
  by ``forget``.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(self, name: str, base_delay: float = 1.0, max_delay: float = 300.0):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._failures = {}
        self._delayed = []
        self._counter = itertools.count()
        self._shutting_down = False

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._counter), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Re-add a key after its backoff delay; returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** min(failures, 30)), self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None):
        """
        Block until a key is ready and mark it as being processed.

        Returns:
            The key, or None on shutdown or when ``timeout`` elapsed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key

                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._delayed = []
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
