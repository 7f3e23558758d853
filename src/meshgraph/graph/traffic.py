"""Raw traffic samples, protocol response classes and edge traffic totals.

A sample is one observed interaction over the requested window: who called
whom, over which protocol, with which response, at what rate. Samples come
from the metrics collaborator; the builder folds them into edges.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from pydantic import BaseModel

NO_FLAGS = "-"


class Protocol(enum.StrEnum):
    HTTP = "http"
    GRPC = "grpc"
    TCP = "tcp"


# Response classes that count as errors, per protocol.
_ERROR_CLASSES: dict[Protocol, tuple[str, ...]] = {
    Protocol.HTTP: ("4xx", "5xx", "NoResponse"),
    Protocol.GRPC: ("Err", "NoResponse"),
    Protocol.TCP: (),
}

# Every response class a protocol can report, in display order.
RESPONSE_CLASSES: dict[Protocol, tuple[str, ...]] = {
    Protocol.HTTP: ("3xx", "4xx", "5xx", "NoResponse"),
    Protocol.GRPC: ("Err", "NoResponse"),
    Protocol.TCP: (),
}


def response_class(protocol: Protocol, code: str) -> str | None:
    """Bucket a response code, or ``None`` for a plain success."""
    if protocol == Protocol.HTTP:
        if code in ("", "-", "0"):
            return "NoResponse"
        if code[0] in "345":
            return f"{code[0]}xx"
        return None
    if protocol == Protocol.GRPC:
        if code in ("", "-"):
            return "NoResponse"
        return None if code == "0" else "Err"
    return None


def is_error(protocol: Protocol, code: str) -> bool:
    return response_class(protocol, code) in _ERROR_CLASSES[protocol]


class TrafficSample(BaseModel):
    """One source → destination observation from the metrics store."""

    source_cluster: str = ""
    source_workload_namespace: str = ""
    source_workload: str = ""
    source_app: str = ""
    source_version: str = ""
    dest_cluster: str = ""
    dest_service_namespace: str = ""
    dest_service: str = ""
    dest_workload_namespace: str = ""
    dest_workload: str = ""
    dest_app: str = ""
    dest_version: str = ""
    protocol: Protocol = Protocol.HTTP
    response_code: str = "200"
    response_flags: str = NO_FLAGS
    host: str = ""
    rate: float = 0.0


class SecuritySample(TrafficSample):
    """A traffic sample broken down by connection security policy."""

    security_policy: str = "none"
    source_principal: str = ""
    dest_principal: str = ""

    @property
    def is_mtls(self) -> bool:
        return self.security_policy == "mutual_tls"


@dataclass
class ResponseDetail:
    flags: dict[str, float] = field(default_factory=dict)
    hosts: dict[str, float] = field(default_factory=dict)


@dataclass
class EdgeTraffic:
    """Aggregated traffic carried by one edge."""

    rate: float = 0.0
    responses: dict[str, ResponseDetail] = field(default_factory=dict)

    def add(self, rate: float, code: str, flags: str = NO_FLAGS, host: str = "") -> None:
        self.rate += rate
        detail = self.responses.setdefault(code, ResponseDetail())
        flags = flags or NO_FLAGS
        detail.flags[flags] = detail.flags.get(flags, 0.0) + rate
        if host:
            detail.hosts[host] = detail.hosts.get(host, 0.0) + rate

    def merge(self, other: EdgeTraffic) -> None:
        self.rate += other.rate
        for code, theirs in other.responses.items():
            mine = self.responses.setdefault(code, ResponseDetail())
            for flag, rate in theirs.flags.items():
                mine.flags[flag] = mine.flags.get(flag, 0.0) + rate
            for host, rate in theirs.hosts.items():
                mine.hosts[host] = mine.hosts.get(host, 0.0) + rate

    def class_rates(self, protocol: Protocol) -> dict[str, float]:
        """Total rate per response class (success codes are not listed)."""
        totals: dict[str, float] = {}
        for code, detail in self.responses.items():
            cls = response_class(protocol, code)
            if cls is None:
                continue
            totals[cls] = totals.get(cls, 0.0) + sum(detail.flags.values())
        return totals

    def error_rate(self, protocol: Protocol) -> float:
        return sum(
            sum(detail.flags.values())
            for code, detail in self.responses.items()
            if is_error(protocol, code)
        )
