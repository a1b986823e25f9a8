from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import requests

from .config import AgentConfig
from .domain import FlowSnapshot, TrafficUpdate
from .flow_state import FlowStateStore
from .gateway import GatewayClient
from .httpcall import RequestCancelled
from .pending import PendingQueue
from .transport import BackendClient, RateLimited


log = logging.getLogger("traffic_agent.runner")

# Bound on all cycle joins together once stop is set.
_SHUTDOWN_GRACE_S = 1.0


def _stopping(stop: Optional[threading.Event]) -> bool:
    return stop is not None and stop.is_set()


class Gateway(Protocol):
    def collect(
        self,
        *,
        timeout_s: float,
        now_ms: Optional[int] = None,
        stop: Optional[threading.Event] = None,
    ) -> List[FlowSnapshot]: ...


class Backend(Protocol):
    def report(
        self,
        updates: Sequence[TrafficUpdate],
        *,
        timeout_s: float,
        stop: Optional[threading.Event] = None,
    ) -> None: ...

    def heartbeat(
        self,
        *,
        timeout_s: float,
        stats: Optional[Dict[str, int]] = None,
        stop: Optional[threading.Event] = None,
    ) -> None: ...


def _default_backend(config: AgentConfig) -> BackendClient:
    return BackendClient(
        requests.Session(),
        api_base=config.server_api_base,
        backend_id=config.backend_id,
        token=config.backend_token,
        agent_id=config.agent_id,
        gateway_type=config.gateway_type,
        gateway_endpoint=config.gateway_endpoint,
    )


class Runner:
    """Owns flow state and the pending queue; drives poll, report and heartbeat.

    Each cycle runs on its own thread with its own HTTP session. The flow
    store and the queue each guard themselves with a lock that is never held
    across a network call.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        gateway: Optional[Gateway] = None,
        reporter: Optional[Backend] = None,
        heartbeater: Optional[Backend] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.gateway: Gateway = gateway or GatewayClient(
            requests.Session(),
            config.gateway_type,
            config.gateway_endpoint,
            config.gateway_token,
        )
        self.reporter: Backend = reporter or _default_backend(config)
        self.heartbeater: Backend = heartbeater or reporter or _default_backend(config)
        self._clock = clock

        self._flows = FlowStateStore(stale_after_ms=int(config.stale_flow_timeout_s * 1000))
        self._pending = PendingQueue(max_size=config.max_pending_updates)

        self.updates_sent_total = 0
        self.updates_dropped_total = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -----------------------------
    # Pipeline
    # -----------------------------

    def ingest_snapshots(self, snapshots: Sequence[FlowSnapshot], now_ms: int) -> int:
        """Turn one poll's snapshots into queued deltas; returns how many were queued."""

        updates = self._flows.ingest(snapshots, now_ms)
        evicted = self._pending.append(updates)
        if evicted:
            log.debug(
                "pending queue full; dropped %s oldest updates (queue=%s)",
                evicted,
                len(self._pending),
                extra={"fields": {"evicted": evicted, "max_pending_updates": self._pending.max_size}},
            )
        return len(updates)

    def take_batch(self, limit: int) -> List[TrafficUpdate]:
        return self._pending.drain(limit)

    def pending_count(self) -> int:
        return len(self._pending)

    def tracked_flows(self) -> int:
        return len(self._flows)

    def metrics(self) -> Dict[str, int]:
        out = self._pending.metrics()
        out.update(
            {
                "tracked_flows": len(self._flows),
                "flows_evicted_total": int(self._flows.evictions_total),
                "counter_resets_total": int(self._flows.counter_resets_total),
                "updates_sent_total": int(self.updates_sent_total),
                "updates_dropped_total": int(self.updates_dropped_total),
            }
        )
        return out

    # -----------------------------
    # Cycle ticks
    # -----------------------------

    def poll_once(self, stop: Optional[threading.Event] = None) -> bool:
        if _stopping(stop):
            return False

        now_ms = self._now_ms()
        try:
            snapshots = self.gateway.collect(timeout_s=self.config.request_timeout_s, now_ms=now_ms, stop=stop)
        except RequestCancelled:
            log.debug("gateway poll cancelled")
            return False
        except Exception as exc:
            log.warning("gateway poll failed: %r", exc)
            return False

        if _stopping(stop):
            return False
        queued = self.ingest_snapshots(snapshots, now_ms)
        log.debug("polled %s flows -> %s updates (queue=%s)", len(snapshots), queued, len(self._pending))
        return True

    def report_once(self, stop: Optional[threading.Event] = None) -> int:
        """Send one batch; a failed batch is dropped, never re-queued."""

        if _stopping(stop):
            return 0
        batch = self.take_batch(self.config.report_batch_size)
        if not batch:
            return 0

        try:
            self.reporter.report(batch, timeout_s=self.config.request_timeout_s, stop=stop)
        except RateLimited as exc:
            self.updates_dropped_total += len(batch)
            log.warning("report rate limited; dropped %s updates (retry_after=%s)", len(batch), exc.retry_after_s)
            return 0
        except Exception as exc:
            self.updates_dropped_total += len(batch)
            log.warning("report failed; dropped %s updates: %r", len(batch), exc)
            return 0

        self.updates_sent_total += len(batch)
        log.debug("reported %s updates (queue=%s)", len(batch), len(self._pending))
        return len(batch)

    def heartbeat_once(self, stop: Optional[threading.Event] = None) -> bool:
        if _stopping(stop):
            return False
        try:
            self.heartbeater.heartbeat(timeout_s=self.config.request_timeout_s, stats=self.metrics(), stop=stop)
        except RequestCancelled:
            log.debug("heartbeat cancelled")
            return False
        except Exception as exc:
            log.warning("heartbeat failed: %r", exc)
            return False
        return True

    # -----------------------------
    # Scheduling
    # -----------------------------

    def _cycle(
        self,
        name: str,
        interval_s: float,
        tick: Callable[[Optional[threading.Event]], object],
        stop: threading.Event,
        *,
        immediate: bool,
    ) -> None:
        def _tick() -> None:
            try:
                tick(stop)
            except Exception:
                log.exception("%s cycle tick raised", name)

        if immediate and not stop.is_set():
            _tick()
        while not stop.wait(interval_s):
            _tick()
        log.debug("%s cycle stopped", name)

    def run(self, stop: threading.Event) -> None:
        """Run all cycles until ``stop`` is set.

        Calls in flight observe ``stop`` and are abandoned. Whatever is still
        pending when ``stop`` fires is discarded.
        """

        cycles = [
            ("poll", self.config.gateway_poll_interval_s, self.poll_once, True),
            ("report", self.config.report_interval_s, self.report_once, False),
            ("heartbeat", self.config.heartbeat_interval_s, self.heartbeat_once, True),
        ]
        threads = [
            threading.Thread(
                target=self._cycle,
                args=(name, interval, tick, stop),
                kwargs={"immediate": immediate},
                name=f"traffic-agent-{name}",
                daemon=True,
            )
            for name, interval, tick, immediate in cycles
        ]
        for t in threads:
            t.start()

        stop.wait()
        deadline = time.monotonic() + _SHUTDOWN_GRACE_S
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
            if t.is_alive():
                log.warning("%s still busy at shutdown; abandoning", t.name)

        pending = len(self._pending)
        if pending:
            log.info("shutdown with %s unreported updates discarded", pending)
