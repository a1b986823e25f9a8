from __future__ import annotations

import argparse
import math
import os
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from .decoders import normalize_gateway_type, supported_gateway_types
from .version import AGENT_VERSION


class ConfigError(ValueError):
    """Invalid or missing agent settings; fatal at startup."""


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_LOG_FORMATS = {"text", "json"}


def _finite(value: float, *, name: str) -> float:
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite")
    return value


def parse_duration(value: Any, *, name: str = "duration") -> float:
    """Parse seconds from a number or a Go-style string ("500ms", "2s", "1m30s")."""

    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return _finite(float(value), name=name)
    raw = str(value).strip().lower()
    if not raw:
        raise ConfigError(f"{name} is empty")
    try:
        return _finite(float(raw), name=name)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for m in _DURATION_RE.finditer(raw):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(raw):
        raise ConfigError(f"invalid {name}={value!r} (expected e.g. 2s, 500ms, 5m)")
    return total


def _parse_bool(value: Any, *, name: str) -> bool:
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigError(f"invalid {name}={value!r}; expected true/false")


def _parse_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"invalid {name}={value!r}; expected an integer") from None


@dataclass(frozen=True)
class AgentConfig:
    server_api_base: str
    backend_id: int
    backend_token: str
    agent_id: str

    gateway_type: str
    gateway_endpoint: str
    gateway_token: str | None

    report_interval_s: float = 2.0
    heartbeat_interval_s: float = 30.0
    gateway_poll_interval_s: float = 2.0
    request_timeout_s: float = 15.0

    report_batch_size: int = 1000
    max_pending_updates: int = 50_000
    stale_flow_timeout_s: float = 300.0

    log_enabled: bool = True
    log_level: str = "INFO"
    log_format: str = "text"

    def describe(self) -> str:
        """One-line startup summary with secrets masked."""

        return (
            "agent_id=%s backend_id=%s server=%s gateway=%s(%s) gateway_token=%s "
            "poll=%.1fs report=%.1fs heartbeat=%.1fs timeout=%.1fs batch=%s max_pending=%s stale=%.0fs"
            % (
                self.agent_id,
                self.backend_id,
                self.server_api_base,
                self.gateway_type,
                self.gateway_endpoint,
                "set" if self.gateway_token else "none",
                self.gateway_poll_interval_s,
                self.report_interval_s,
                self.heartbeat_interval_s,
                self.request_timeout_s,
                self.report_batch_size,
                self.max_pending_updates,
                self.stale_flow_timeout_s,
            )
        )


# field name -> (env var, CLI flag, kind)
_FIELDS: Dict[str, tuple[str, str, str]] = {
    "server_api_base": ("NEKO_SERVER", "--server", "str"),
    "backend_id": ("NEKO_BACKEND_ID", "--backend-id", "int"),
    "backend_token": ("NEKO_BACKEND_TOKEN", "--backend-token", "str"),
    "agent_id": ("NEKO_AGENT_ID", "--agent-id", "str"),
    "gateway_type": ("NEKO_GATEWAY_TYPE", "--gateway-type", "str"),
    "gateway_endpoint": ("NEKO_GATEWAY_URL", "--gateway-url", "str"),
    "gateway_token": ("NEKO_GATEWAY_TOKEN", "--gateway-token", "str"),
    "report_interval_s": ("NEKO_REPORT_INTERVAL", "--report-interval", "duration"),
    "heartbeat_interval_s": ("NEKO_HEARTBEAT_INTERVAL", "--heartbeat-interval", "duration"),
    "gateway_poll_interval_s": ("NEKO_GATEWAY_POLL_INTERVAL", "--gateway-poll-interval", "duration"),
    "request_timeout_s": ("NEKO_REQUEST_TIMEOUT", "--request-timeout", "duration"),
    "report_batch_size": ("NEKO_REPORT_BATCH_SIZE", "--report-batch-size", "int"),
    "max_pending_updates": ("NEKO_MAX_PENDING_UPDATES", "--max-pending-updates", "int"),
    "stale_flow_timeout_s": ("NEKO_STALE_FLOW_TIMEOUT", "--stale-flow-timeout", "duration"),
    "log_enabled": ("NEKO_LOG", "--log", "bool"),
    "log_level": ("NEKO_LOG_LEVEL", "--log-level", "str"),
    "log_format": ("NEKO_LOG_FORMAT", "--log-format", "str"),
}

_DEFAULTS: Dict[str, Any] = {
    "gateway_type": "clash",
    "gateway_token": None,
    "report_interval_s": AgentConfig.report_interval_s,
    "heartbeat_interval_s": AgentConfig.heartbeat_interval_s,
    "gateway_poll_interval_s": AgentConfig.gateway_poll_interval_s,
    "request_timeout_s": AgentConfig.request_timeout_s,
    "report_batch_size": AgentConfig.report_batch_size,
    "max_pending_updates": AgentConfig.max_pending_updates,
    "stale_flow_timeout_s": AgentConfig.stale_flow_timeout_s,
    "log_enabled": AgentConfig.log_enabled,
    "log_level": AgentConfig.log_level,
    "log_format": AgentConfig.log_format,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="traffic-agent",
        description="Poll a local proxy gateway and report per-connection traffic deltas to the collector.",
    )
    parser.add_argument("--config", default=None, help="YAML config file (env: NEKO_AGENT_CONFIG)")
    parser.add_argument("--version", action="version", version=AGENT_VERSION)
    for name, (env, flag, kind) in _FIELDS.items():
        dest = name
        if kind == "bool":
            parser.add_argument(flag, dest=dest, default=None, action=argparse.BooleanOptionalAction, help=f"env: {env}")
            continue
        metavar = {"int": "N", "duration": "DURATION"}.get(kind, "VALUE")
        extra = ""
        if name == "gateway_type":
            extra = f" (one of: {', '.join(supported_gateway_types())})"
        parser.add_argument(flag, dest=dest, default=None, metavar=metavar, help=f"env: {env}{extra}")
    return parser


def _load_yaml(path: str) -> Mapping[str, Any]:
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"config file {path} must contain a mapping")
    unknown = sorted(str(k) for k in data if k not in _FIELDS)
    if unknown:
        raise ConfigError(f"unknown keys in {path}: {', '.join(unknown)}")
    return data


def _convert(name: str, kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == "int":
        return _parse_int(value, name=name)
    if kind == "duration":
        return parse_duration(value, name=name)
    if kind == "bool":
        return _parse_bool(value, name=name)
    s = str(value).strip()
    return s or None


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AgentConfig:
    """Resolve settings: CLI flag > environment > YAML file > default."""

    env = os.environ if environ is None else environ
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    config_path = args.config or env.get("NEKO_AGENT_CONFIG")
    file_values = _load_yaml(config_path) if config_path else {}

    resolved: Dict[str, Any] = {}
    for name, (env_name, _, kind) in _FIELDS.items():
        value = _convert(name, kind, getattr(args, name))
        if value is None:
            value = _convert(name, kind, env.get(env_name) or None)
        if value is None:
            value = _convert(name, kind, file_values.get(name))
        if value is None:
            value = _DEFAULTS.get(name)
        resolved[name] = value

    return _validate(resolved)


def _validate(values: Dict[str, Any]) -> AgentConfig:
    for name in ("server_api_base", "backend_id", "backend_token", "gateway_endpoint"):
        if values.get(name) in (None, ""):
            env_name, flag, _ = _FIELDS[name]
            raise ConfigError(f"{name} is required ({flag} or {env_name})")

    server = str(values["server_api_base"])
    if not server.startswith(("http://", "https://")):
        raise ConfigError(f"server_api_base must be an http(s) URL, got {server!r}")
    endpoint = str(values["gateway_endpoint"])
    if not endpoint.startswith(("http://", "https://")):
        raise ConfigError(f"gateway_endpoint must be an http(s) URL, got {endpoint!r}")

    if values["backend_id"] <= 0:
        raise ConfigError("backend_id must be > 0")

    try:
        gateway_type = normalize_gateway_type(values["gateway_type"])
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    for name in ("report_interval_s", "heartbeat_interval_s", "gateway_poll_interval_s", "request_timeout_s"):
        if values[name] <= 0:
            raise ConfigError(f"{name} must be > 0")
    if values["stale_flow_timeout_s"] < values["gateway_poll_interval_s"]:
        raise ConfigError("stale_flow_timeout_s must be >= gateway_poll_interval_s")
    for name in ("report_batch_size", "max_pending_updates"):
        if values[name] <= 0:
            raise ConfigError(f"{name} must be > 0")

    log_level = str(values["log_level"]).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"invalid log_level={values['log_level']!r}")
    log_format = str(values["log_format"]).lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"invalid log_format={values['log_format']!r}; expected text or json")

    agent_id = values.get("agent_id") or f"{socket.gethostname()}-{values['backend_id']}"

    return AgentConfig(
        server_api_base=server.rstrip("/"),
        backend_id=int(values["backend_id"]),
        backend_token=str(values["backend_token"]),
        agent_id=str(agent_id),
        gateway_type=gateway_type,
        gateway_endpoint=endpoint,
        gateway_token=values.get("gateway_token"),
        report_interval_s=float(values["report_interval_s"]),
        heartbeat_interval_s=float(values["heartbeat_interval_s"]),
        gateway_poll_interval_s=float(values["gateway_poll_interval_s"]),
        request_timeout_s=float(values["request_timeout_s"]),
        report_batch_size=int(values["report_batch_size"]),
        max_pending_updates=int(values["max_pending_updates"]),
        stale_flow_timeout_s=float(values["stale_flow_timeout_s"]),
        log_enabled=bool(values["log_enabled"]),
        log_level=log_level,
        log_format=log_format,
    )
