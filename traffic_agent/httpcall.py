"""Outbound HTTP calls bounded by a total deadline and a stop event.

``requests`` applies ``timeout=`` per socket operation, so a peer that trickles
its body can hold a call open indefinitely. ``bounded_request`` runs the call on
a worker thread, streams the body, and gives up once the deadline passes or the
stop event is set. An abandoned worker stops at its next chunk and closes the
response; its result is never handed back.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests


_CANCEL_CHECK_S = 0.05
_CHUNK_SIZE = 16 * 1024


class RequestCancelled(requests.RequestException):
    """The call was abandoned because the agent is shutting down."""


@dataclass(frozen=True)
class BodyResponse:
    status_code: int
    headers: Mapping[str, str]
    content: bytes

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def _fetch(
    session: requests.Session,
    method: str,
    url: str,
    *,
    timeout_s: float,
    abandon: threading.Event,
    kwargs: Dict[str, Any],
) -> BodyResponse:
    resp = session.request(method, url, stream=True, timeout=timeout_s, **kwargs)
    try:
        chunks = []
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            if abandon.is_set():
                raise RequestCancelled(f"{method} {url} abandoned")
            chunks.append(chunk)
        return BodyResponse(status_code=resp.status_code, headers=resp.headers, content=b"".join(chunks))
    finally:
        resp.close()


def bounded_request(
    session: requests.Session,
    method: str,
    url: str,
    *,
    timeout_s: float,
    stop: Optional[threading.Event] = None,
    **kwargs: Any,
) -> BodyResponse:
    """Perform one request and read its whole body within ``timeout_s``.

    Raises ``requests.Timeout`` when the deadline passes and ``RequestCancelled``
    when ``stop`` is set first. Errors raised by the request itself propagate
    unchanged.
    """

    if stop is not None and stop.is_set():
        raise RequestCancelled(f"{method} {url} cancelled")

    deadline = time.monotonic() + timeout_s
    abandon = threading.Event()
    done = threading.Event()
    outcome: Dict[str, Any] = {}

    def _work() -> None:
        try:
            outcome["response"] = _fetch(session, method, url, timeout_s=timeout_s, abandon=abandon, kwargs=kwargs)
        except Exception as exc:
            outcome["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=_work, name=f"traffic-agent-http-{method.lower()}", daemon=True)
    worker.start()

    while True:
        remaining = deadline - time.monotonic()
        if done.wait(max(0.0, min(remaining, _CANCEL_CHECK_S))):
            break
        if stop is not None and stop.is_set():
            abandon.set()
            raise RequestCancelled(f"{method} {url} cancelled")
        if time.monotonic() >= deadline:
            abandon.set()
            raise requests.Timeout(f"{method} {url} exceeded {timeout_s:g}s")

    if "error" in outcome:
        raise outcome["error"]
    return outcome["response"]
