from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "traffic-agent"
    agent_id: str | None = None


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Structured extras passed as ``extra={"fields": {...}}`` are kept under
    "fields".
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }
        if self.config.agent_id:
            payload["agent_id"] = self.config.agent_id

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(
    *,
    level: int | str,
    log_format: str,
    enabled: bool = True,
    agent_id: str | None = None,
) -> None:
    """Configure agent logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable
    - enabled=False: discard everything
    """

    root = logging.getLogger()
    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    if not enabled:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    root.setLevel(level)
    handler = logging.StreamHandler()
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(agent_id=agent_id)))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)
