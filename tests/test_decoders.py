from __future__ import annotations

import json

import pytest

from traffic_agent.decoders import (
    DecodeError,
    coerce_int,
    coerce_str,
    decode_snapshots,
    normalize_gateway_type,
    split_host_port,
)


NOW_MS = 1_700_000_999_000


def _surge(*requests: object) -> bytes:
    return json.dumps({"requests": list(requests)}).encode("utf-8")


def _clash(*connections: object) -> bytes:
    return json.dumps({"downloadTotal": 1, "uploadTotal": 2, "connections": list(connections)}).encode("utf-8")


def test_surge_supports_flexible_fields() -> None:
    body = (
        b'{"requests":[{"id":123,"remoteHost":"example.com:443","policyName":"Proxy",'
        b'"originalPolicyName":"MATCH","outBytes":"100.9","inBytes":200,"time":"1700000000123"}]}'
    )
    snapshots = decode_snapshots("surge", body, now_ms=NOW_MS)

    assert len(snapshots) == 1
    s = snapshots[0]
    assert s.id == "123"
    assert s.domain == "example.com"
    assert s.ip == ""
    assert s.upload == 100
    assert s.download == 200
    assert s.timestamp_ms == 1700000000123
    assert s.chains == ["Proxy"]
    assert s.rule == "MATCH"


def test_surge_decode_error_includes_debug_hint() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("surge", b'{"requests":[{"id":{"bad":1}}]}', now_ms=NOW_MS)

    msg = str(excinfo.value)
    assert "decode surge response" in msg
    assert "first request id type=object" in msg
    assert excinfo.value.dialect == "surge"


def test_surge_hint_names_offending_entry_and_field() -> None:
    body = _surge({"id": 1, "outBytes": 5}, {"id": 2, "inBytes": [1, 2]})
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("surge", body, now_ms=NOW_MS)
    assert "request #2 inBytes type=array" in str(excinfo.value)


def test_surge_addresses_and_rule_payload() -> None:
    body = _surge(
        {
            "id": "abc",
            "remoteHost": "93.184.216.34:443",
            "remoteAddress": "93.184.216.34:443 (Proxy)",
            "localAddress": "192.168.1.2:56123",
            "policyName": "HK-01",
            "originalPolicyName": "Streaming",
            "rule": "DOMAIN-SUFFIX,example.com",
            "outBytes": 1.0,
            "inBytes": "2",
        }
    )
    (s,) = decode_snapshots("surge", body, now_ms=NOW_MS)

    assert s.domain == ""
    assert s.ip == "93.184.216.34"
    assert s.source_ip == "192.168.1.2"
    assert s.rule == "Streaming"
    assert s.rule_payload == "example.com"
    # No sample time on the wire -> poll time.
    assert s.timestamp_ms == NOW_MS


def test_surge_remote_address_fills_ip_next_to_domain() -> None:
    body = _surge({"id": 7, "remoteHost": "example.com:443", "remoteAddress": "93.184.216.34:443"})
    (s,) = decode_snapshots("surge", body, now_ms=NOW_MS)
    assert s.domain == "example.com"
    assert s.ip == "93.184.216.34"


def test_surge_rule_type_used_when_original_policy_missing() -> None:
    body = _surge({"id": 1, "policyName": "DIRECT", "rule": "FINAL,DIRECT"})
    (s,) = decode_snapshots("surge", body, now_ms=NOW_MS)
    assert s.rule == "MATCH"
    assert s.chains == ["DIRECT"]


def test_surge_skips_entries_without_id_and_duplicates() -> None:
    body = _surge(
        {"remoteHost": "a.com:443", "outBytes": 1},
        {"id": "x", "outBytes": 10},
        {"id": "x", "outBytes": 99},
        {"id": "y", "outBytes": 3},
    )
    snapshots = decode_snapshots("surge", body, now_ms=NOW_MS)
    assert [(s.id, s.upload) for s in snapshots] == [("x", 10), ("y", 3)]


def test_surge_missing_requests_is_empty() -> None:
    assert decode_snapshots("surge", b"{}", now_ms=NOW_MS) == []


def test_surge_requests_must_be_a_list() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("surge", b'{"requests":{"id":1}}', now_ms=NOW_MS)
    assert "requests type=object" in str(excinfo.value)


def test_negative_counter_is_a_decode_failure() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("surge", _surge({"id": 1, "outBytes": -5}), now_ms=NOW_MS)
    assert "first request outBytes type=number" in str(excinfo.value)


def test_invalid_json_is_a_decode_failure() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("clash", b"{not json", now_ms=NOW_MS)
    assert str(excinfo.value).startswith("decode clash response: invalid JSON")


def test_clash_connections_decode() -> None:
    body = _clash(
        {
            "id": "6a0d-uuid",
            "metadata": {
                "network": "tcp",
                "sourceIP": "192.168.1.5",
                "destinationIP": "142.250.72.14",
                "destinationPort": "443",
                "host": "www.google.com",
            },
            "upload": 1024,
            "download": "4096.7",
            "start": "2024-01-01T00:00:00.000Z",
            "chains": ["HK-01", "Proxy"],
            "rule": "DomainSuffix",
            "rulePayload": "google.com",
        }
    )
    (s,) = decode_snapshots("clash", body, now_ms=NOW_MS)

    assert s.id == "6a0d-uuid"
    assert s.domain == "www.google.com"
    assert s.ip == "142.250.72.14"
    assert s.source_ip == "192.168.1.5"
    assert s.chains == ["HK-01", "Proxy"]
    assert s.rule == "DomainSuffix"
    assert s.rule_payload == "google.com"
    assert (s.upload, s.download) == (1024, 4096)
    assert s.timestamp_ms == NOW_MS


def test_clash_ip_only_host_and_sniff_host() -> None:
    body = _clash(
        {"id": "a", "metadata": {"host": "", "sniffHost": "cdn.example.org", "destinationIP": "1.1.1.1"}},
        {"id": "b", "metadata": {"host": "8.8.8.8"}, "chains": []},
    )
    a, b = decode_snapshots("clash", body, now_ms=NOW_MS)
    assert a.domain == "cdn.example.org"
    assert b.domain == ""
    assert b.ip == "8.8.8.8"
    assert b.chains == ["DIRECT"]


def test_clash_null_connections_is_empty() -> None:
    assert decode_snapshots("clash", b'{"connections":null}', now_ms=NOW_MS) == []


def test_clash_metadata_type_hint() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_snapshots("clash", _clash({"id": "a", "metadata": "oops"}), now_ms=NOW_MS)
    assert "first connection metadata type=string" in str(excinfo.value)


def test_mihomo_alias_and_unknown_gateway_type() -> None:
    assert normalize_gateway_type(" Mihomo ") == "clash"
    with pytest.raises(ValueError, match="unsupported gateway type"):
        normalize_gateway_type("squid")


@pytest.mark.parametrize(
    ("value", "expected"),
    [(7, 7), (7.9, 7), ("7", 7), ("7.9", 7), (" 12 ", 12), ("", 0), (None, 0), ("1e3", 1000)],
)
def test_coerce_int_number_or_string(value: object, expected: int) -> None:
    assert coerce_int(value, field="n") == expected


@pytest.mark.parametrize("value", [True, {"a": 1}, [1], "abc", "nan", float("inf")])
def test_coerce_int_rejects(value: object) -> None:
    with pytest.raises(ValueError):
        coerce_int(value, field="n")


def test_coerce_str_accepts_numbers() -> None:
    assert coerce_str(123, field="id") == "123"
    assert coerce_str(5.0, field="id") == "5"
    assert coerce_str(" x ", field="id") == "x"
    assert coerce_str(None, field="id") == ""


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("example.com:443", ("example.com", "443")),
        ("example.com", ("example.com", "")),
        ("[2001:db8::1]:443", ("2001:db8::1", "443")),
        ("2001:db8::1", ("2001:db8::1", "")),
        ("1.2.3.4:80 (Proxy)", ("1.2.3.4", "80")),
        ("", ("", "")),
    ],
)
def test_split_host_port(raw: str, expected: tuple[str, str]) -> None:
    assert split_host_port(raw) == expected
