from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class FlowSnapshot:
    """One connection as reported by the gateway on a single poll.

    Upload/Download are cumulative since the connection was established.
    """

    id: str
    domain: str = ""
    ip: str = ""
    source_ip: str = ""
    chains: List[str] = field(default_factory=list)
    rule: str = ""
    rule_payload: str = ""
    upload: int = 0
    download: int = 0
    timestamp_ms: int = 0


@dataclass
class FlowCounterState:
    last_upload: int
    last_download: int
    last_seen_ms: int


@dataclass(frozen=True)
class TrafficUpdate:
    """Traffic delta for one flow since its previous observation."""

    domain: str
    ip: str
    chain: str
    chains: List[str]
    rule: str
    rule_payload: str
    upload: int
    download: int
    source_ip: str
    timestamp_ms: int

    @classmethod
    def from_snapshot(cls, snapshot: FlowSnapshot, *, upload: int, download: int) -> "TrafficUpdate":
        chains = list(snapshot.chains)
        return cls(
            domain=snapshot.domain,
            ip=snapshot.ip,
            chain=chains[0] if chains else "",
            chains=chains,
            rule=snapshot.rule,
            rule_payload=snapshot.rule_payload,
            upload=upload,
            download=download,
            source_ip=snapshot.source_ip,
            timestamp_ms=snapshot.timestamp_ms,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "chain": self.chain,
            "chains": list(self.chains),
            "rule": self.rule,
            "upload": int(self.upload),
            "download": int(self.download),
            "timestampMs": int(self.timestamp_ms),
        }
        # Optional descriptive fields are omitted when empty.
        if self.domain:
            payload["domain"] = self.domain
        if self.ip:
            payload["ip"] = self.ip
        if self.rule_payload:
            payload["rulePayload"] = self.rule_payload
        if self.source_ip:
            payload["sourceIP"] = self.source_ip
        return payload
