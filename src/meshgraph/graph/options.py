"""Graph request parsing and validation.

``GraphQuery`` carries request parameters as the transport received them;
``parse_options`` turns it into validated ``GraphOptions`` or raises
``ScopeError``.
"""

from __future__ import annotations

import re
import time

from pydantic import BaseModel, Field

from meshgraph.config.settings import Settings
from meshgraph.exceptions import ScopeError
from meshgraph.models.base import BoxKind, GraphType, NodeKind

_DURATION_RE = re.compile(r"^(\d+)(s|m|h|d)?$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")

FOCAL_KINDS = (NodeKind.APP, NodeKind.WORKLOAD, NodeKind.SERVICE)


class GraphQuery(BaseModel):
    """Raw graph request parameters."""

    namespaces: str = ""
    cluster: str = ""
    graph_type: str = ""
    duration: str = ""
    query_time: str = ""
    inject_service_nodes: str = ""
    box_by: str = ""
    include_idle_nodes: str = ""
    show_security: str = ""
    appenders: str | None = None
    node_namespace: str = ""
    node_kind: str = ""
    node_name: str = ""
    node_version: str = ""

    @property
    def is_node_request(self) -> bool:
        return bool(self.node_kind or self.node_name)


class FocalNode(BaseModel):
    """The node a node-centric graph is drawn around."""

    model_config = {"frozen": True}

    cluster: str
    namespace: str
    kind: NodeKind
    name: str
    version: str = ""


class GraphOptions(BaseModel):
    namespaces: list[str]
    cluster: str
    graph_type: GraphType
    duration_seconds: int
    query_time: float
    focal: FocalNode | None = None
    inject_service_nodes: bool = True
    box_by: list[BoxKind] = Field(default_factory=list)
    include_idle_nodes: bool = False
    show_security: bool = False
    appenders: list[str] | None = None

    @property
    def node_mode(self) -> bool:
        return self.focal is not None


def parse_duration(raw: str) -> int:
    """Parse ``600``, ``600s``, ``10m``, ``1h`` or ``1d`` into seconds."""
    match = _DURATION_RE.match(raw.strip())
    if not match:
        raise ScopeError(f"Invalid duration [{raw}]")
    seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
    if seconds <= 0:
        raise ScopeError(f"Duration must be positive, got [{raw}]")
    return seconds


def parse_bool(raw: str, name: str, default: bool) -> bool:
    value = raw.strip().lower()
    if not value:
        return default
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ScopeError(f"Invalid value for {name} [{raw}], expected true or false")


def _split(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_options(query: GraphQuery, defaults: Settings, now: float | None = None) -> GraphOptions:
    now = time.time() if now is None else now
    cluster = query.cluster or defaults.default_cluster

    try:
        graph_type = GraphType(query.graph_type or defaults.default_graph_type)
    except ValueError as exc:
        raise ScopeError(f"Invalid graphType [{query.graph_type}]") from exc

    duration = (
        parse_duration(query.duration) if query.duration else defaults.default_duration_seconds
    )

    if query.query_time:
        try:
            query_time = float(query.query_time)
        except ValueError as exc:
            raise ScopeError(f"Invalid queryTime [{query.query_time}]") from exc
    else:
        query_time = now

    box_by: list[BoxKind] = []
    for raw in _split(query.box_by):
        try:
            kind = BoxKind(raw)
        except ValueError as exc:
            raise ScopeError(f"Invalid boxBy value [{raw}]") from exc
        if kind == BoxKind.APP and graph_type not in (GraphType.APP, GraphType.VERSIONED_APP):
            raise ScopeError(f"boxBy app is not supported for graphType [{graph_type}]")
        if kind not in box_by:
            box_by.append(kind)

    inject = parse_bool(
        query.inject_service_nodes, "injectServiceNodes", defaults.inject_service_nodes
    )
    include_idle = parse_bool(query.include_idle_nodes, "includeIdleNodes", False)
    show_security = parse_bool(query.show_security, "showSecurity", False)
    appenders = None if query.appenders is None else _split(query.appenders)

    namespaces = sorted(set(_split(query.namespaces)))
    focal: FocalNode | None = None

    if query.is_node_request:
        focal = _parse_focal(query, cluster, graph_type)
        if not namespaces:
            namespaces = [focal.namespace]
        if len(namespaces) != 1:
            raise ScopeError(
                "Node graph does not support the 'namespaces' query parameter "
                "with more than one namespace",
                extra={"namespaces": namespaces},
            )
        if namespaces[0] != focal.namespace:
            raise ScopeError(
                f"Namespace [{namespaces[0]}] does not match node namespace [{focal.namespace}]"
            )
        # idle nodes only make sense for whole namespaces
        include_idle = False
        if focal.kind == NodeKind.SERVICE:
            inject = True
    elif not namespaces:
        raise ScopeError("At least one namespace must be requested")

    if graph_type == GraphType.SERVICE:
        inject = True

    return GraphOptions(
        namespaces=namespaces,
        cluster=cluster,
        graph_type=graph_type,
        duration_seconds=duration,
        query_time=query_time,
        focal=focal,
        inject_service_nodes=inject,
        box_by=box_by,
        include_idle_nodes=include_idle,
        show_security=show_security,
        appenders=appenders,
    )


def _parse_focal(query: GraphQuery, cluster: str, graph_type: GraphType) -> FocalNode:
    try:
        kind = NodeKind(query.node_kind)
    except ValueError as exc:
        raise ScopeError(f"Invalid node type [{query.node_kind}]") from exc
    if kind not in FOCAL_KINDS:
        raise ScopeError(f"Node graph is not supported for node type [{kind}]")
    if not query.node_namespace or not query.node_name:
        raise ScopeError("Node graph requires a namespace and a node name")
    if query.node_version:
        if kind != NodeKind.APP:
            raise ScopeError("A version may only be given for an app node")
        if graph_type != GraphType.VERSIONED_APP:
            raise ScopeError("A versioned app node requires graphType versionedApp")
    return FocalNode(
        cluster=cluster,
        namespace=query.node_namespace,
        kind=kind,
        name=query.node_name,
        version=query.node_version,
    )
