"""Gateway response decoders.

Each supported gateway speaks its own loosely-typed JSON dialect: ids and byte
counters may arrive as numbers or strings, counters may carry a fractional
part, and endpoint identity is packed into ``host:port`` strings. Everything
is coerced exactly once here so the rest of the pipeline only ever sees a
canonical :class:`FlowSnapshot`.

Adding a dialect means writing a ``_decode_<name>(data, now_ms)`` function and
listing it in ``_DECODERS``; callers select it by ``gateway_type`` only.
"""

from __future__ import annotations

import ipaddress
import json
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .domain import FlowSnapshot


DEFAULT_CHAIN = "DIRECT"


class DecodeError(ValueError):
    """Raised when a gateway payload cannot be normalized."""

    def __init__(self, dialect: str, reason: str, *, hint: str | None = None):
        message = f"decode {dialect} response: {reason}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)
        self.dialect = dialect
        self.reason = reason
        self.hint = hint


class FieldTypeError(ValueError):
    """A single field could not be coerced; carries the observed JSON type."""

    def __init__(self, field: str, value: Any, *, detail: str | None = None):
        self.field = field
        self.observed = json_type_name(value)
        self.detail = detail
        text = f"cannot coerce field {field!r} from {self.observed}"
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def coerce_int(value: Any, *, field: str) -> int:
    """Coerce a JSON number or numeric string to int, truncating toward zero.

    Missing values (None or "") decode as 0.
    """

    if value is None:
        return 0
    if isinstance(value, bool):
        raise FieldTypeError(field, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FieldTypeError(field, value, detail="not finite")
        return int(value)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return 0
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            dec = Decimal(raw)
        except InvalidOperation:
            raise FieldTypeError(field, value, detail=f"not numeric {raw[:32]!r}") from None
        if not dec.is_finite():
            raise FieldTypeError(field, value, detail="not finite")
        return int(dec)
    raise FieldTypeError(field, value)


def coerce_counter(value: Any, *, field: str) -> int:
    n = coerce_int(value, field=field)
    if n < 0:
        raise FieldTypeError(field, value, detail="negative byte counter")
    return n


def coerce_str(value: Any, *, field: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise FieldTypeError(field, value)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    raise FieldTypeError(field, value)


def coerce_str_list(value: Any, *, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise FieldTypeError(field, value)
    out: List[str] = []
    for item in value:
        s = coerce_str(item, field=field)
        if s:
            out.append(s)
    return out


def split_host_port(raw: str) -> Tuple[str, str]:
    """Split ``host:port`` (or ``[v6]:port``); a bare host yields an empty port.

    Trailing annotations after whitespace (``1.2.3.4:443 (Proxy)``) are ignored.
    """

    value = (raw or "").strip().split(" ", 1)[0]
    if not value:
        return "", ""
    if value.startswith("["):
        end = value.find("]")
        if end != -1:
            host = value[1:end]
            rest = value[end + 1 :]
            return host, rest[1:] if rest.startswith(":") else ""
    if value.count(":") == 1:
        host, port = value.split(":", 1)
        return host, port
    # Zero colons: bare host. More than one: unbracketed IPv6 literal.
    return value, ""


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _ordinal(idx: int) -> str:
    return "first" if idx == 0 else f"#{idx + 1}"


def _split_surge_rule(raw: str) -> Tuple[str, str]:
    """Return (type, payload) from ``TYPE,PAYLOAD[,POLICY]``."""

    parts = [p.strip() for p in (raw or "").split(",")]
    if not parts or not parts[0]:
        return "", ""
    rule_type = parts[0]
    if rule_type == "FINAL":
        return "MATCH", ""
    if len(parts) >= 2:
        return rule_type, parts[1]
    return rule_type, ""


def _require_list(dialect: str, data: Any, key: str) -> List[Any]:
    if not isinstance(data, Mapping):
        raise DecodeError(dialect, "unexpected top-level value", hint=f"body type={json_type_name(data)}")
    items = data.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise DecodeError(dialect, f"{key!r} is not a list", hint=f"{key} type={json_type_name(items)}")
    return items


def _decode_entries(
    dialect: str,
    items: List[Any],
    *,
    noun: str,
    build: Callable[[Mapping[str, Any]], Optional[FlowSnapshot]],
) -> List[FlowSnapshot]:
    out: List[FlowSnapshot] = []
    seen: set[str] = set()
    for idx, item in enumerate(items):
        where = f"{_ordinal(idx)} {noun}"
        if not isinstance(item, Mapping):
            raise DecodeError(dialect, f"{noun} entry is not an object", hint=f"{where} type={json_type_name(item)}")
        try:
            snapshot = build(item)
        except FieldTypeError as exc:
            raise DecodeError(dialect, str(exc), hint=f"{where} {exc.field} type={exc.observed}") from exc
        if snapshot is None or snapshot.id in seen:
            continue
        seen.add(snapshot.id)
        out.append(snapshot)
    return out


# -----------------------------
# surge: GET /v1/requests/active
# -----------------------------


def _decode_surge(data: Any, now_ms: int) -> List[FlowSnapshot]:
    items = _require_list("surge", data, "requests")

    def _build(item: Mapping[str, Any]) -> Optional[FlowSnapshot]:
        flow_id = coerce_str(item.get("id"), field="id")
        if not flow_id:
            return None

        domain = ""
        ip = ""
        remote_host = coerce_str(item.get("remoteHost"), field="remoteHost")
        if not remote_host:
            remote_host = coerce_str(item.get("host"), field="host")
        if remote_host:
            host, _ = split_host_port(remote_host)
            if is_ip_literal(host):
                ip = host
            else:
                domain = host

        remote_address = coerce_str(item.get("remoteAddress"), field="remoteAddress")
        if remote_address and not ip:
            host, _ = split_host_port(remote_address)
            if is_ip_literal(host):
                ip = host

        source = coerce_str(item.get("sourceAddress"), field="sourceAddress")
        if not source:
            source = coerce_str(item.get("localAddress"), field="localAddress")
        source_ip, _ = split_host_port(source)

        policy = coerce_str(item.get("policyName"), field="policyName")
        original_policy = coerce_str(item.get("originalPolicyName"), field="originalPolicyName")
        rule_type, rule_payload = _split_surge_rule(coerce_str(item.get("rule"), field="rule"))

        chain = policy or original_policy or DEFAULT_CHAIN
        timestamp_ms = coerce_int(item.get("time"), field="time") or now_ms

        return FlowSnapshot(
            id=flow_id,
            domain=domain,
            ip=ip,
            source_ip=source_ip,
            chains=[chain],
            rule=original_policy or rule_type,
            rule_payload=rule_payload,
            upload=coerce_counter(item.get("outBytes"), field="outBytes"),
            download=coerce_counter(item.get("inBytes"), field="inBytes"),
            timestamp_ms=timestamp_ms,
        )

    return _decode_entries("surge", items, noun="request", build=_build)


# -----------------------------
# clash / mihomo: GET /connections
# -----------------------------


def _decode_clash(data: Any, now_ms: int) -> List[FlowSnapshot]:
    items = _require_list("clash", data, "connections")

    def _build(item: Mapping[str, Any]) -> Optional[FlowSnapshot]:
        flow_id = coerce_str(item.get("id"), field="id")
        if not flow_id:
            return None

        meta = item.get("metadata")
        if meta is None:
            meta = {}
        if not isinstance(meta, Mapping):
            raise FieldTypeError("metadata", meta)

        host = coerce_str(meta.get("host"), field="metadata.host")
        if not host:
            host = coerce_str(meta.get("sniffHost"), field="metadata.sniffHost")
        ip = coerce_str(meta.get("destinationIP"), field="metadata.destinationIP")
        domain = host
        if host and is_ip_literal(host):
            domain = ""
            ip = ip or host

        chains = coerce_str_list(item.get("chains"), field="chains") or [DEFAULT_CHAIN]

        return FlowSnapshot(
            id=flow_id,
            domain=domain,
            ip=ip,
            source_ip=coerce_str(meta.get("sourceIP"), field="metadata.sourceIP"),
            chains=chains,
            rule=coerce_str(item.get("rule"), field="rule"),
            rule_payload=coerce_str(item.get("rulePayload"), field="rulePayload"),
            upload=coerce_counter(item.get("upload"), field="upload"),
            download=coerce_counter(item.get("download"), field="download"),
            # clash only reports the connection start; the sample time is the poll.
            timestamp_ms=now_ms,
        )

    return _decode_entries("clash", items, noun="connection", build=_build)


_DECODERS: Dict[str, Callable[[Any, int], List[FlowSnapshot]]] = {
    "clash": _decode_clash,
    "surge": _decode_surge,
}


def supported_gateway_types() -> List[str]:
    return sorted(_DECODERS)


def normalize_gateway_type(gateway_type: str) -> str:
    name = (gateway_type or "").strip().lower()
    if name == "mihomo":
        name = "clash"
    if name not in _DECODERS:
        raise ValueError(
            f"unsupported gateway type {gateway_type!r} (expected one of: {', '.join(supported_gateway_types())})"
        )
    return name


def decode_snapshots(gateway_type: str, body: bytes, *, now_ms: int) -> List[FlowSnapshot]:
    """Decode one raw gateway response into snapshots, in upstream order."""

    dialect = normalize_gateway_type(gateway_type)
    try:
        data = json.loads(body)
    except UnicodeDecodeError as exc:
        raise DecodeError(dialect, "body is not valid UTF-8", hint=f"byte offset {exc.start}") from exc
    except json.JSONDecodeError as exc:
        raise DecodeError(dialect, f"invalid JSON: {exc.msg}", hint=f"line {exc.lineno} column {exc.colno}") from exc
    return _DECODERS[dialect](data, now_ms)
