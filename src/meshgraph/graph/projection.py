"""Projects a finished ``TrafficMap`` into the renderable graph document.

Pure: reads the map, never mutates it, and orders every collection so the
same map always renders to the same bytes.
"""

from __future__ import annotations

import hashlib
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from meshgraph.graph.model import Edge, MetadataKey, Node, TrafficMap
from meshgraph.graph.options import GraphOptions
from meshgraph.graph.traffic import RESPONSE_CLASSES, Protocol
from meshgraph.models.base import BoxKind, NodeKind
from meshgraph.models.health import HealthSample

_BOX_ORDER = {str(BoxKind.CLUSTER): 0, str(BoxKind.NAMESPACE): 1, str(BoxKind.APP): 2}


def _rate(value: float) -> str:
    return f"{value:.2f}"


def _percent(value: float) -> str:
    return f"{value:.1f}"


def hash_id(key: str) -> str:
    return hashlib.md5(key.encode(), usedforsecurity=False).hexdigest()


# ── Document models ──────────────────────────────────────────────────


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DestService(_Document):
    cluster: str
    namespace: str
    name: str


class NodeTraffic(_Document):
    protocol: str
    rates: dict[str, str]


class NodeData(_Document):
    id: str
    parent: str | None = None
    cluster: str
    namespace: str
    node_type: str
    workload: str | None = None
    app: str | None = None
    version: str | None = None
    service: str | None = None
    dest_services: list[DestService] | None = None
    traffic: list[NodeTraffic] | None = None
    health_data: HealthSample | None = None
    health_data_app: HealthSample | None = None
    has_health_config: dict[str, str] | None = None
    has_missing_sc: bool | None = Field(default=None, alias="hasMissingSC")
    is_box: str | None = None
    is_focal: bool | None = None
    is_idle: bool | None = None
    is_inaccessible: bool | None = None
    is_outside: bool | None = None
    is_root: bool | None = None


class ResponseData(_Document):
    flags: dict[str, str]
    hosts: dict[str, str]


class EdgeTrafficData(_Document):
    protocol: str
    rates: dict[str, str]
    responses: dict[str, ResponseData]


class EdgeData(_Document):
    id: str
    source: str
    target: str
    is_mtls: str | None = Field(default=None, alias="isMTLS")
    source_principal: str | None = None
    dest_principal: str | None = None
    traffic: EdgeTrafficData


class NodeWrapper(_Document):
    data: NodeData


class EdgeWrapper(_Document):
    data: EdgeData


class Elements(_Document):
    nodes: list[NodeWrapper] = Field(default_factory=list)
    edges: list[EdgeWrapper] = Field(default_factory=list)


class GraphDocument(_Document):
    """The rendered graph plus the metadata it was generated with."""

    timestamp: int
    duration: int
    graph_type: str
    elements: Elements = Field(default_factory=Elements)


# ── Projection ───────────────────────────────────────────────────────


def project(traffic_map: TrafficMap, options: GraphOptions, timestamp: float) -> GraphDocument:
    inbound = traffic_map.inbound()
    nodes = [_node_data(node, inbound.get(node.id, [])) for node in traffic_map]
    nodes.sort(key=_node_order)
    edges = [_edge_data(edge) for edge in traffic_map.edges()]
    edges.sort(key=lambda e: e.id)
    return GraphDocument(
        timestamp=int(timestamp),
        duration=options.duration_seconds,
        graph_type=str(options.graph_type),
        elements=Elements(
            nodes=[NodeWrapper(data=n) for n in nodes],
            edges=[EdgeWrapper(data=e) for e in edges],
        ),
    )


def render_json(document: GraphDocument) -> str:
    return document.model_dump_json(by_alias=True, exclude_none=True)


def _node_order(data: NodeData) -> tuple[int, str]:
    if data.is_box is not None:
        return _BOX_ORDER.get(data.is_box, 3), data.id
    return 4, data.id


def _opt(value: str) -> str | None:
    return value or None


def _flag(node: Node, key: MetadataKey) -> bool | None:
    return True if node.flag(key) else None


def _node_data(node: Node, inbound: list[Edge]) -> NodeData:
    meta = node.metadata
    dest_services = meta.get(MetadataKey.DEST_SERVICES)
    return NodeData(
        id=hash_id(node.id),
        parent=hash_id(node.parent) if node.parent else None,
        cluster=node.cluster,
        namespace=node.namespace,
        node_type=str(node.kind),
        workload=_opt(node.workload),
        app=_opt(node.app),
        version=_opt(node.version),
        service=_opt(node.service),
        dest_services=(
            [DestService(**dest_services[key]) for key in sorted(dest_services)]
            if dest_services
            else None
        ),
        traffic=_node_traffic(node, inbound) if node.kind != NodeKind.BOX else None,
        health_data=meta.get(MetadataKey.HEALTH_DATA),
        health_data_app=meta.get(MetadataKey.HEALTH_DATA_APP),
        has_health_config=meta.get(MetadataKey.HAS_HEALTH_CONFIG),
        has_missing_sc=_flag(node, MetadataKey.HAS_MISSING_SIDECAR),
        is_box=meta.get(MetadataKey.IS_BOX),
        is_focal=_flag(node, MetadataKey.IS_FOCAL),
        is_idle=_flag(node, MetadataKey.IS_IDLE),
        is_inaccessible=_flag(node, MetadataKey.IS_INACCESSIBLE),
        is_outside=_flag(node, MetadataKey.IS_OUTSIDE),
        is_root=_flag(node, MetadataKey.IS_ROOT),
    )


def _node_traffic(node: Node, inbound: list[Edge]) -> list[NodeTraffic] | None:
    """Per-protocol in/out rates, with error classes for inbound traffic."""
    totals: dict[Protocol, dict[str, float]] = {}
    for edge in inbound:
        rates = totals.setdefault(edge.protocol, {})
        prefix = f"{edge.protocol}In"
        rates[prefix] = rates.get(prefix, 0.0) + edge.traffic.rate
        for cls, rate in edge.traffic.class_rates(edge.protocol).items():
            rates[prefix + cls] = rates.get(prefix + cls, 0.0) + rate
    for edge in node.edges:
        rates = totals.setdefault(edge.protocol, {})
        key = f"{edge.protocol}Out"
        rates[key] = rates.get(key, 0.0) + edge.traffic.rate

    if not totals:
        return None
    traffic = []
    for protocol in sorted(totals):
        rates = totals[protocol]
        formatted = {
            key: _rate(value)
            for key, value in sorted(rates.items())
            if value > 0 or key in (f"{protocol}In", f"{protocol}Out")
        }
        traffic.append(NodeTraffic(protocol=str(protocol), rates=formatted))
    return traffic


def _edge_data(edge: Edge) -> EdgeData:
    meta = edge.metadata
    mtls = meta.get(MetadataKey.IS_MTLS)
    source_principals = meta.get(MetadataKey.SOURCE_PRINCIPALS)
    dest_principals = meta.get(MetadataKey.DEST_PRINCIPALS)
    return EdgeData(
        id=edge.id,
        source=hash_id(edge.source.id),
        target=hash_id(edge.dest.id),
        is_mtls=_percent(mtls) if mtls is not None else None,
        source_principal=",".join(source_principals) if source_principals else None,
        dest_principal=",".join(dest_principals) if dest_principals else None,
        traffic=_edge_traffic(edge),
    )


def _edge_traffic(edge: Edge) -> EdgeTrafficData:
    protocol = edge.protocol
    traffic = edge.traffic
    rates: dict[str, str] = {str(protocol): _rate(traffic.rate)}

    if RESPONSE_CLASSES[protocol]:
        outbound = sum(e.traffic.rate for e in edge.source.edges if e.protocol == protocol)
        if outbound > 0:
            rates[f"{protocol}PercentReq"] = _percent(100.0 * traffic.rate / outbound)
        errors = traffic.error_rate(protocol)
        if traffic.rate > 0 and errors > 0:
            rates[f"{protocol}PercentErr"] = _percent(100.0 * errors / traffic.rate)

    responses = {
        code: ResponseData(
            flags=_shares(detail.flags, traffic.rate),
            hosts=_shares(detail.hosts, traffic.rate),
        )
        for code, detail in sorted(traffic.responses.items())
    }
    return EdgeTrafficData(protocol=str(protocol), rates=rates, responses=responses)


def _shares(rates: dict[str, float], total: float) -> dict[str, str]:
    return {
        key: _percent(100.0 * value / total if total > 0 else 0.0)
        for key, value in sorted(rates.items())
    }


def document_stats(document: GraphDocument) -> dict[str, Any]:
    return {
        "nodes": len(document.elements.nodes),
        "edges": len(document.elements.edges),
    }
