from __future__ import annotations

import socket
import threading
import time
from typing import Any, Dict, Mapping, Optional, Sequence

import requests

from .domain import TrafficUpdate
from .httpcall import BodyResponse, bounded_request
from .version import AGENT_VERSION


class TransportError(RuntimeError):
    """Raised when the collector rejects a report or heartbeat."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(TransportError):
    """Raised when the server returns HTTP 429.

    retry_after_s is best-effort parsed from Retry-After.
    """

    def __init__(self, message: str, retry_after_s: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after_s = retry_after_s


def _parse_retry_after_seconds(headers: Mapping[str, Any]) -> float | None:
    """Parse Retry-After (seconds only). Returns None if unparseable."""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        return float(str(ra).strip())
    except ValueError:
        return None


def _check_response(resp: BodyResponse, *, what: str) -> None:
    if 200 <= resp.status_code < 300:
        return
    if resp.status_code == 429:
        ra = _parse_retry_after_seconds(resp.headers)
        raise RateLimited(f"{what} rate limited (429)", retry_after_s=ra)
    raise TransportError(f"{what} failed: {resp.status_code} {resp.text[:200]}", status_code=resp.status_code)


class BackendClient:
    """Pushes traffic batches and heartbeats to the collector API."""

    def __init__(
        self,
        session: requests.Session,
        *,
        api_base: str,
        backend_id: int,
        token: str,
        agent_id: str,
        gateway_type: str = "",
        gateway_endpoint: str = "",
    ) -> None:
        self.session = session
        self.api_base = api_base.rstrip("/")
        self.backend_id = int(backend_id)
        self.token = token
        self.agent_id = agent_id
        self.gateway_type = gateway_type
        self.gateway_endpoint = gateway_endpoint

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def report(
        self,
        updates: Sequence[TrafficUpdate],
        *,
        timeout_s: float,
        stop: Optional[threading.Event] = None,
    ) -> None:
        if not updates:
            raise ValueError("report requires at least one update")

        payload: Dict[str, Any] = {
            "backendId": self.backend_id,
            "agentId": self.agent_id,
            "agentVersion": AGENT_VERSION,
            "updates": [u.to_payload() for u in updates],
        }
        resp = bounded_request(
            self.session,
            "POST",
            f"{self.api_base}/agent/report",
            timeout_s=timeout_s,
            stop=stop,
            headers=self._headers(),
            json=payload,
        )
        _check_response(resp, what="report")

    def heartbeat(
        self,
        *,
        timeout_s: float,
        stats: Mapping[str, int] | None = None,
        stop: Optional[threading.Event] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "backendId": self.backend_id,
            "agentId": self.agent_id,
            "agentVersion": AGENT_VERSION,
            "gatewayType": self.gateway_type,
            "gatewayEndpoint": self.gateway_endpoint,
            "hostname": socket.gethostname(),
            "timestampMs": int(time.time() * 1000),
        }
        if stats:
            payload["stats"] = dict(stats)
        resp = bounded_request(
            self.session,
            "POST",
            f"{self.api_base}/agent/heartbeat",
            timeout_s=timeout_s,
            stop=stop,
            headers=self._headers(),
            json=payload,
        )
        _check_response(resp, what="heartbeat")
