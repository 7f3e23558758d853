"""In-memory traffic graph: node identity, nodes, edges and the traffic map.

A ``TrafficMap`` is built once per request and passed by reference through
the whole pipeline. Nodes are keyed by the canonical string form of their
identity; each node owns its outbound edges.
"""

from __future__ import annotations

import enum
import hashlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import structlog

from meshgraph.exceptions import InternalError
from meshgraph.graph.traffic import EdgeTraffic, Protocol
from meshgraph.models.base import NodeKind

logger = structlog.get_logger()

# Value reported by telemetry when a label could not be determined.
UNKNOWN = "unknown"


def is_ok(name: str) -> bool:
    return name not in ("", UNKNOWN)


def is_ok_version(version: str) -> bool:
    return is_ok(version) and version != "latest"


class MetadataKey(enum.StrEnum):
    DEST_SERVICES = "destServices"
    HAS_HEALTH_CONFIG = "hasHealthConfig"
    HAS_MISSING_SIDECAR = "hasMissingSC"
    HEALTH_DATA = "healthData"
    HEALTH_DATA_APP = "healthDataApp"
    IS_BOX = "isBox"
    IS_FOCAL = "isFocal"
    IS_IDLE = "isIdle"
    IS_INACCESSIBLE = "isInaccessible"
    IS_MTLS = "isMTLS"
    IS_OUTSIDE = "isOutside"
    IS_ROOT = "isRoot"
    SOURCE_PRINCIPALS = "sourcePrincipals"
    DEST_PRINCIPALS = "destPrincipals"


def node_key(
    cluster: str,
    namespace: str,
    kind: NodeKind,
    app: str = "",
    version: str = "",
    workload: str = "",
    service: str = "",
) -> str:
    """Canonical identity key. Field order is fixed."""
    return "|".join((cluster, namespace, str(kind), app, version, workload, service))


@dataclass(frozen=True)
class NodeIdentity:
    """Composite node identity. Fields that do not apply to ``kind`` stay empty."""

    cluster: str
    namespace: str
    kind: NodeKind
    app: str = ""
    version: str = ""
    workload: str = ""
    service: str = ""

    @property
    def key(self) -> str:
        return node_key(
            self.cluster,
            self.namespace,
            self.kind,
            self.app,
            self.version,
            self.workload,
            self.service,
        )


@dataclass(eq=False)
class Edge:
    source: Node = field(repr=False)
    dest: Node = field(repr=False)
    protocol: Protocol
    traffic: EdgeTraffic = field(default_factory=EdgeTraffic)
    metadata: dict[str, Any] = field(default_factory=dict)

    @cached_property
    def id(self) -> str:
        raw = f"{self.source.id}->{self.dest.id}:{self.protocol}"
        return hashlib.md5(raw.encode(), usedforsecurity=False).hexdigest()


@dataclass(eq=False)
class Node:
    """One mesh participant.

    ``identity`` is immutable and decides the map key. The display fields
    may carry more than the identity (a workload node keeps its app and
    version labels, for example).
    """

    identity: NodeIdentity
    app: str = ""
    version: str = ""
    workload: str = ""
    service: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    parent: str | None = None
    edges: list[Edge] = field(default_factory=list, repr=False)

    @property
    def id(self) -> str:
        return self.identity.key

    @property
    def cluster(self) -> str:
        return self.identity.cluster

    @property
    def namespace(self) -> str:
        return self.identity.namespace

    @property
    def kind(self) -> NodeKind:
        return self.identity.kind

    def flag(self, key: MetadataKey) -> bool:
        return bool(self.metadata.get(key, False))

    def find_edge(self, dest_id: str, protocol: Protocol) -> Edge | None:
        for edge in self.edges:
            if edge.dest.id == dest_id and edge.protocol == protocol:
                return edge
        return None

    def add_edge(self, dest: Node, protocol: Protocol) -> Edge:
        """Return the edge to ``dest`` for ``protocol``, creating it if needed."""
        edge = self.find_edge(dest.id, protocol)
        if edge is None:
            edge = Edge(source=self, dest=dest, protocol=protocol)
            self.edges.append(edge)
        return edge


class TrafficMap:
    """Identity key → ``Node`` with O(1) lookup."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def __contains__(self, key: object) -> bool:
        if isinstance(key, Node):
            return self._nodes.get(key.id) is key
        return key in self._nodes

    def __getitem__(self, key: str) -> Node:
        return self._nodes[key]

    def get(self, key: str) -> Node | None:
        return self._nodes.get(key)

    def keys(self) -> list[str]:
        return list(self._nodes)

    def add(self, node: Node) -> Node:
        if node.id in self._nodes:
            logger.error("duplicate_node_identity", node_id=node.id)
            raise InternalError(
                f"Duplicate node identity: {node.id}",
                extra={"node_id": node.id},
            )
        self._nodes[node.id] = node
        return node

    def get_or_add(
        self,
        identity: NodeIdentity,
        *,
        app: str = "",
        version: str = "",
        workload: str = "",
        service: str = "",
    ) -> tuple[Node, bool]:
        """Idempotent lookup-or-insert. Returns ``(node, created)``."""
        existing = self._nodes.get(identity.key)
        if existing is not None:
            return existing, False
        node = Node(
            identity=identity,
            app=app or identity.app,
            version=version or identity.version,
            workload=workload or identity.workload,
            service=service or identity.service,
        )
        self._nodes[node.id] = node
        return node, True

    def remove(self, key: str) -> Node | None:
        """Remove a node and every edge pointing at it."""
        node = self._nodes.pop(key, None)
        if node is None:
            return None
        for other in self._nodes.values():
            other.edges = [e for e in other.edges if e.dest.id != key]
        return node

    def edges(self) -> Iterator[Edge]:
        for node in list(self._nodes.values()):
            yield from node.edges

    def inbound(self) -> dict[str, list[Edge]]:
        """Map of node key → edges terminating at that node."""
        result: dict[str, list[Edge]] = {}
        for edge in self.edges():
            result.setdefault(edge.dest.id, []).append(edge)
        return result

    def validate(self) -> None:
        """Raise ``InternalError`` if any edge references a node not in the map."""
        for edge in self.edges():
            for end in (edge.source, edge.dest):
                if self._nodes.get(end.id) is not end:
                    logger.error(
                        "dangling_edge_reference",
                        source=edge.source.id,
                        dest=edge.dest.id,
                        protocol=str(edge.protocol),
                        missing=end.id,
                    )
                    raise InternalError(
                        f"Edge {edge.source.id} -> {edge.dest.id} references missing node {end.id}",
                        extra={"missing_node": end.id},
                    )
