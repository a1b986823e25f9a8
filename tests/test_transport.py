from __future__ import annotations

import threading
import time
from typing import Any, Iterator

import pytest
import requests

from traffic_agent.domain import TrafficUpdate
from traffic_agent.httpcall import RequestCancelled
from traffic_agent.transport import BackendClient, RateLimited, TransportError


class _FakeResponse:
    def __init__(self, status_code: int, text: str = "", headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}

    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        yield self.text.encode("utf-8")

    def close(self) -> None:
        pass


class _FakeSession:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def request(
        self, method: str, url: str, *, headers: dict[str, str], json: dict[str, Any], timeout: float, stream: bool
    ) -> _FakeResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        return self.response


def _client(session: _FakeSession) -> BackendClient:
    return BackendClient(
        session,  # type: ignore[arg-type]
        api_base="http://collector:3000/api/",
        backend_id=7,
        token="backend-token",
        agent_id="agent-1",
        gateway_type="clash",
        gateway_endpoint="http://127.0.0.1:9090/connections",
    )


def _update() -> TrafficUpdate:
    return TrafficUpdate(
        domain="example.com",
        ip="",
        chain="HK-01",
        chains=["HK-01", "Proxy"],
        rule="DomainSuffix",
        rule_payload="example.com",
        upload=15,
        download=30,
        source_ip="",
        timestamp_ms=1700000000123,
    )


def test_report_posts_camel_case_batch() -> None:
    session = _FakeSession(_FakeResponse(200))
    _client(session).report([_update()], timeout_s=4.0)

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "http://collector:3000/api/agent/report"
    assert call["headers"] == {"Authorization": "Bearer backend-token"}
    assert call["timeout"] == 4.0
    body = call["json"]
    assert body["backendId"] == 7
    assert body["agentId"] == "agent-1"
    assert "agentVersion" in body
    assert body["updates"] == [
        {
            "domain": "example.com",
            "chain": "HK-01",
            "chains": ["HK-01", "Proxy"],
            "rule": "DomainSuffix",
            "rulePayload": "example.com",
            "upload": 15,
            "download": 30,
            "timestampMs": 1700000000123,
        }
    ]


def test_report_rejects_empty_batch() -> None:
    with pytest.raises(ValueError):
        _client(_FakeSession(_FakeResponse(200))).report([], timeout_s=1.0)


def test_report_429_raises_rate_limited_with_retry_after() -> None:
    session = _FakeSession(_FakeResponse(429, "slow down", {"Retry-After": "12"}))
    with pytest.raises(RateLimited) as excinfo:
        _client(session).report([_update()], timeout_s=1.0)
    assert excinfo.value.retry_after_s == 12.0
    assert excinfo.value.status_code == 429


def test_report_5xx_raises_transport_error() -> None:
    session = _FakeSession(_FakeResponse(503, "unavailable"))
    with pytest.raises(TransportError) as excinfo:
        _client(session).report([_update()], timeout_s=1.0)
    assert excinfo.value.status_code == 503
    assert "503 unavailable" in str(excinfo.value)


def test_heartbeat_identifies_agent_and_carries_stats() -> None:
    session = _FakeSession(_FakeResponse(204))
    _client(session).heartbeat(timeout_s=2.0, stats={"pending_queue_depth": 3})

    call = session.calls[0]
    assert call["url"] == "http://collector:3000/api/agent/heartbeat"
    body = call["json"]
    assert body["backendId"] == 7
    assert body["agentId"] == "agent-1"
    assert body["gatewayType"] == "clash"
    assert body["gatewayEndpoint"] == "http://127.0.0.1:9090/connections"
    assert body["stats"] == {"pending_queue_depth": 3}
    assert isinstance(body["timestampMs"], int)
    assert "hostname" in body


def test_heartbeat_failure_raises() -> None:
    with pytest.raises(TransportError):
        _client(_FakeSession(_FakeResponse(401, "bad token"))).heartbeat(timeout_s=1.0)


class _HangingSession:
    """Blocks inside the request until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.entered.set()
        self.release.wait(10.0)
        return _FakeResponse(200)


def test_report_gives_up_at_total_timeout() -> None:
    session = _HangingSession()
    try:
        started = time.monotonic()
        with pytest.raises(requests.Timeout):
            _client(session).report([_update()], timeout_s=0.3)  # type: ignore[arg-type]
        assert time.monotonic() - started < 1.5
    finally:
        session.release.set()


def test_heartbeat_in_flight_is_cancelled_by_stop() -> None:
    session = _HangingSession()
    stop = threading.Event()
    threading.Thread(target=lambda: session.entered.wait(5.0) and stop.set(), daemon=True).start()
    try:
        started = time.monotonic()
        with pytest.raises(RequestCancelled):
            _client(session).heartbeat(timeout_s=10.0, stop=stop)  # type: ignore[arg-type]
        assert time.monotonic() - started < 1.5
    finally:
        session.release.set()
