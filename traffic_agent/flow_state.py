"""Per-flow cumulative counter tracking.

Gateways expose cumulative byte counters per connection. The store keeps the
last observed counters for every flow id and turns each new observation into a
non-negative delta.

Rules
- An unseen flow has a (0, 0) baseline, so its first delta is its full total.
- A counter lower than the stored baseline means the gateway reset it. The
  observation becomes the new baseline and produces no update.
- Every other observation produces an update, a (0, 0) one included.
- Flows not observed for longer than ``stale_after_ms`` are forgotten; if the
  same id shows up again it starts from a zero baseline.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from .domain import FlowCounterState, FlowSnapshot, TrafficUpdate


class FlowStateStore:
    def __init__(self, *, stale_after_ms: int) -> None:
        self.stale_after_ms = int(max(0, stale_after_ms))

        self._lock = threading.Lock()
        self._flows: Dict[str, FlowCounterState] = {}

        self.counter_resets_total = 0
        self.evictions_total = 0

    def ingest(self, snapshots: Iterable[FlowSnapshot], now_ms: int) -> List[TrafficUpdate]:
        """Apply one poll's snapshots in order and return the resulting deltas."""

        updates: List[TrafficUpdate] = []
        with self._lock:
            for snap in snapshots:
                prev = self._flows.get(snap.id)
                if prev is None:
                    prev = FlowCounterState(last_upload=0, last_download=0, last_seen_ms=now_ms)
                    self._flows[snap.id] = prev

                if snap.upload < prev.last_upload or snap.download < prev.last_download:
                    self.counter_resets_total += 1
                else:
                    updates.append(
                        TrafficUpdate.from_snapshot(
                            snap,
                            upload=snap.upload - prev.last_upload,
                            download=snap.download - prev.last_download,
                        )
                    )

                prev.last_upload = snap.upload
                prev.last_download = snap.download
                prev.last_seen_ms = now_ms

            self._evict_stale(now_ms)
        return updates

    def _evict_stale(self, now_ms: int) -> int:
        cutoff = now_ms - self.stale_after_ms
        stale = [flow_id for flow_id, st in self._flows.items() if st.last_seen_ms < cutoff]
        for flow_id in stale:
            del self._flows[flow_id]
        self.evictions_total += len(stale)
        return len(stale)

    def get(self, flow_id: str) -> Optional[FlowCounterState]:
        """Return a copy of the stored counters for ``flow_id``."""

        with self._lock:
            st = self._flows.get(flow_id)
            if st is None:
                return None
            return FlowCounterState(
                last_upload=st.last_upload,
                last_download=st.last_download,
                last_seen_ms=st.last_seen_ms,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)
