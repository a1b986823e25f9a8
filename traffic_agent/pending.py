from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, Iterable, List

from .domain import TrafficUpdate


class PendingQueue:
    """Bounded in-memory FIFO of updates awaiting transmission.

    When an append would exceed ``max_size`` the oldest entries are evicted so
    the newest observations always fit. Eviction is only visible through
    ``evictions_total`` and the queue depth.
    """

    def __init__(self, *, max_size: int) -> None:
        self.max_size = max(1, int(max_size))
        self.evictions_total = 0

        self._lock = threading.Lock()
        self._items: Deque[TrafficUpdate] = deque()

    def append(self, updates: Iterable[TrafficUpdate]) -> int:
        """Append updates in order; returns how many old entries were evicted."""

        batch = list(updates)
        if not batch:
            return 0

        with self._lock:
            overflow = len(self._items) + len(batch) - self.max_size
            evicted = 0
            while overflow > 0 and self._items:
                self._items.popleft()
                overflow -= 1
                evicted += 1
            # A single batch larger than the bound keeps only its newest tail.
            if overflow > 0:
                evicted += overflow
                batch = batch[overflow:]
            self._items.extend(batch)
            self.evictions_total += evicted
        return evicted

    def drain(self, limit: int) -> List[TrafficUpdate]:
        """Remove and return up to ``limit`` updates from the front."""

        if limit <= 0:
            return []
        with self._lock:
            n = min(int(limit), len(self._items))
            return [self._items.popleft() for _ in range(n)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def metrics(self) -> Dict[str, int]:
        with self._lock:
            depth = len(self._items)
        return {
            "pending_queue_depth": int(depth),
            "pending_evictions_total": int(self.evictions_total),
        }
