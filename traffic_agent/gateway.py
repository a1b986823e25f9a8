from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

import requests

from .decoders import decode_snapshots, normalize_gateway_type
from .domain import FlowSnapshot
from .httpcall import bounded_request


log = logging.getLogger("traffic_agent.gateway")


class GatewayError(RuntimeError):
    """Raised when the gateway answers with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def build_gateway_headers(gateway_type: str, token: str | None) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        if gateway_type == "surge":
            headers["x-key"] = token
        else:
            headers["Authorization"] = f"Bearer {token}"
    return headers


class GatewayClient:
    """Fetches the connection listing of one local proxy gateway.

    Safe to call repeatedly; no state is carried between calls besides the
    pooled HTTP session.
    """

    def __init__(
        self,
        session: requests.Session,
        gateway_type: str,
        endpoint: str,
        token: str | None = None,
    ) -> None:
        self.session = session
        self.gateway_type = normalize_gateway_type(gateway_type)
        self.endpoint = endpoint
        self.headers = build_gateway_headers(self.gateway_type, token)

    def collect(
        self,
        *,
        timeout_s: float,
        now_ms: Optional[int] = None,
        stop: Optional[threading.Event] = None,
    ) -> List[FlowSnapshot]:
        """Fetch and decode the current connection list.

        The whole call, body included, is bounded by ``timeout_s`` and abandoned
        as soon as ``stop`` is set. ``now_ms`` stamps entries the gateway reports
        without a time of their own.
        """

        resp = bounded_request(
            self.session, "GET", self.endpoint, timeout_s=timeout_s, stop=stop, headers=self.headers
        )
        if not 200 <= resp.status_code < 300:
            raise GatewayError(
                f"gateway {self.gateway_type} request failed: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

        ts = now_ms if now_ms is not None else int(time.time() * 1000)
        snapshots = decode_snapshots(self.gateway_type, resp.content, now_ms=ts)
        log.debug("collected %s flows from %s", len(snapshots), self.gateway_type)
        return snapshots
