"""Turns raw traffic samples into a populated ``TrafficMap``.

Namespace graphs query each namespace concurrently and build one map per
namespace batch. Within a batch, repeated samples for the same
(source, dest, protocol) triple are summed. Across batches, the same
interaction is often reported by both the source and destination
namespace's query, so a node's edges come from the batch of the node's own
namespace and other batches only fill in edges it does not have.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from functools import partial

import structlog

from meshgraph.exceptions import UpstreamQueryError, error_context
from meshgraph.graph.context import AppenderContext
from meshgraph.graph.fanout import bounded, fan_out
from meshgraph.graph.identity import ResolvedNode, resolve_sample, service_identity
from meshgraph.graph.model import UNKNOWN, Edge, MetadataKey, Node, NodeIdentity, TrafficMap, is_ok
from meshgraph.graph.options import FocalNode, GraphOptions
from meshgraph.graph.traffic import TrafficSample
from meshgraph.models.base import GraphType, NodeKind
from meshgraph.observability.base import MetricsClient

logger = structlog.get_logger()


class TrafficMapBuilder:
    """Builds the traffic map for one request.

    Parameters
    ----------
    metrics:
        Metrics store the traffic samples are read from.
    options:
        Validated request options.
    query_timeout:
        Deadline for each traffic query (one per namespace).
    """

    def __init__(
        self,
        metrics: MetricsClient,
        options: GraphOptions,
        query_timeout: float | None = 10.0,
    ) -> None:
        self._metrics = metrics
        self._options = options
        self._query_timeout = query_timeout

    async def build(self, context: AppenderContext) -> TrafficMap:
        """Query traffic and build the map. Any failed query aborts with no map."""
        options = self._options

        with error_context(UpstreamQueryError, detail="traffic query failed"):
            if options.focal is not None:
                window = context.window(options.focal.namespace)
                samples = await bounded(
                    partial(self._metrics.query_node_traffic, options.focal, window),
                    self._query_timeout,
                    branch=f"traffic:{options.focal.namespace}",
                )
                batches = {options.focal.namespace: samples}
            else:
                calls = {
                    name: partial(self._metrics.query_traffic, name, scope.window)
                    for name, scope in sorted(context.namespaces.items())
                }
                batches = await fan_out(
                    calls, self._query_timeout, mandatory=True, label="traffic"
                )

        traffic_map = TrafficMap()
        for namespace in sorted(batches):
            merge_traffic_maps(traffic_map, self.populate(batches[namespace]), namespace)

        if options.focal is not None:
            self._ensure_focal(traffic_map, options.focal)
        self._mark_outside(traffic_map)
        traffic_map.validate()

        logger.info(
            "traffic_map_built",
            namespaces=options.namespaces,
            graph_type=str(options.graph_type),
            node_mode=options.node_mode,
            nodes=len(traffic_map),
            edges=sum(1 for _ in traffic_map.edges()),
        )
        return traffic_map

    def populate(self, samples: Iterable[TrafficSample]) -> TrafficMap:
        """Fold samples into a fresh map. No I/O."""
        options = self._options
        focal = options.focal
        traffic_map = TrafficMap()

        for sample in samples:
            if math.isnan(sample.rate) or sample.rate < 0:
                logger.warning("traffic_sample_skipped", reason="invalid_rate", rate=sample.rate)
                continue

            source_is_focal = focal is not None and _matches_source(focal, sample)
            dest_is_focal = focal is not None and _matches_dest(focal, sample)
            if focal is not None and not (source_is_focal or dest_is_focal):
                continue

            dest_cluster = sample.dest_cluster or options.cluster
            source, dest = resolve_sample(sample, options.graph_type, options.cluster)
            if source is None or dest is None:
                logger.warning(
                    "traffic_sample_skipped",
                    reason="unresolvable_identity",
                    source_workload=sample.source_workload,
                    dest_service=sample.dest_service,
                    dest_workload=sample.dest_workload,
                )
                continue

            source_node = _get_or_add(traffic_map, source)
            dest_node = _get_or_add(traffic_map, dest)

            service_hop: Node | None = None
            if (
                options.inject_service_nodes
                and is_ok(sample.dest_service)
                and dest_node.kind != NodeKind.SERVICE
            ):
                hop = service_identity(
                    dest_cluster, sample.dest_service_namespace, sample.dest_service
                )
                service_hop = _get_or_add(traffic_map, hop)

            if service_hop is not None:
                _add_traffic(source_node.add_edge(service_hop, sample.protocol), sample)
                _add_traffic(service_hop.add_edge(dest_node, sample.protocol), sample)
            else:
                _add_traffic(source_node.add_edge(dest_node, sample.protocol), sample)

            if is_ok(sample.dest_service) and dest_node.kind != NodeKind.SERVICE:
                _add_dest_service(dest_node, dest_cluster, sample)

            if source_is_focal:
                source_node.metadata[MetadataKey.IS_FOCAL] = True
            if dest_is_focal and focal is not None:
                # a focal service sits on the injected hop
                focal_node = dest_node
                if service_hop is not None and focal.kind == NodeKind.SERVICE:
                    focal_node = service_hop
                focal_node.metadata[MetadataKey.IS_FOCAL] = True

        return traffic_map

    def _ensure_focal(self, traffic_map: TrafficMap, focal: FocalNode) -> None:
        """Add the focal node as an idle placeholder when it saw no traffic."""
        if any(node.flag(MetadataKey.IS_FOCAL) for node in traffic_map):
            return
        identity = _focal_identity(focal, self._options.graph_type)
        node, _ = traffic_map.get_or_add(identity)
        node.metadata[MetadataKey.IS_FOCAL] = True
        node.metadata[MetadataKey.IS_IDLE] = True
        logger.info("focal_node_idle", node_id=node.id)

    def _mark_outside(self, traffic_map: TrafficMap) -> None:
        requested = set(self._options.namespaces)
        for node in traffic_map:
            if node.kind in (NodeKind.BOX, NodeKind.UNKNOWN) or node.namespace == UNKNOWN:
                continue
            if node.namespace not in requested:
                node.metadata[MetadataKey.IS_OUTSIDE] = True


def merge_traffic_maps(target: TrafficMap, source: TrafficMap, namespace: str = "") -> None:
    """Merge the batch built for ``namespace`` into ``target``.

    The batch is authoritative for its own namespace's nodes: their metadata
    and outbound edges replace whatever an earlier batch recorded, because
    only this batch saw every caller into the namespace. For any other node,
    reached-through services are unioned and only edges not already present
    are added.
    """
    owned: set[str] = set()
    for node in source:
        merged, created = target.get_or_add(
            node.identity,
            app=node.app,
            version=node.version,
            workload=node.workload,
            service=node.service,
        )
        if created or (namespace and node.namespace == namespace):
            merged.metadata.update(node.metadata)
            if not created:
                owned.add(node.id)
            continue
        theirs = node.metadata.get(MetadataKey.DEST_SERVICES)
        if theirs:
            merged.metadata.setdefault(MetadataKey.DEST_SERVICES, {}).update(theirs)
        if node.flag(MetadataKey.IS_FOCAL):
            merged.metadata[MetadataKey.IS_FOCAL] = True

    for node in source:
        merged = target[node.id]
        if node.id in owned:
            merged.edges = []
        for edge in node.edges:
            if merged.find_edge(edge.dest.id, edge.protocol) is not None:
                continue
            added = merged.add_edge(target[edge.dest.id], edge.protocol)
            added.traffic.merge(edge.traffic)
            added.metadata.update(edge.metadata)


def reduce_to_service_graph(traffic_map: TrafficMap) -> None:
    """Collapse a workload-level map into a service graph, in place.

    Service nodes are kept and ``service → workload → service`` paths become
    ``service → service`` edges. Non-service root nodes are kept with their
    edges into services; every other non-service node is dropped.
    """
    keep: set[str] = set()
    new_edges: dict[str, list[Edge]] = {}

    for node in traffic_map:
        if node.kind != NodeKind.SERVICE:
            if node.flag(MetadataKey.IS_ROOT):
                service_edges = [e for e in node.edges if e.dest.kind == NodeKind.SERVICE]
                if service_edges:
                    keep.add(node.id)
                    new_edges[node.id] = service_edges
            continue

        keep.add(node.id)
        reduced: list[Edge] = []
        for edge in node.edges:
            if edge.dest.kind == NodeKind.SERVICE:
                _fold_edge(reduced, node, edge.dest, edge)
                continue
            for onward in edge.dest.edges:
                if onward.dest.kind == NodeKind.SERVICE:
                    _fold_edge(reduced, node, onward.dest, onward)
        new_edges[node.id] = reduced

    for node in traffic_map:
        if node.id in keep:
            node.edges = new_edges[node.id]
    for key in traffic_map.keys():
        if key not in keep:
            traffic_map.remove(key)
    logger.debug("service_graph_reduced", nodes=len(traffic_map))


def _fold_edge(edges: list[Edge], source: Node, dest: Node, template: Edge) -> None:
    for existing in edges:
        if existing.dest is dest and existing.protocol == template.protocol:
            existing.traffic.merge(template.traffic)
            return
    edge = Edge(source=source, dest=dest, protocol=template.protocol)
    edge.traffic.merge(template.traffic)
    edge.metadata.update(template.metadata)
    edges.append(edge)


def _get_or_add(traffic_map: TrafficMap, resolved: ResolvedNode) -> Node:
    node, _ = traffic_map.get_or_add(
        resolved.identity,
        app=resolved.app,
        version=resolved.version,
        workload=resolved.workload,
        service=resolved.service,
    )
    return node


def _add_traffic(edge: Edge, sample: TrafficSample) -> None:
    edge.traffic.add(sample.rate, sample.response_code, sample.response_flags, sample.host)


def _add_dest_service(node: Node, cluster: str, sample: TrafficSample) -> None:
    services = node.metadata.setdefault(MetadataKey.DEST_SERVICES, {})
    key = f"{cluster}|{sample.dest_service_namespace}|{sample.dest_service}"
    services[key] = {
        "cluster": cluster,
        "namespace": sample.dest_service_namespace,
        "name": sample.dest_service,
    }


def _cluster_matches(focal: FocalNode, cluster: str) -> bool:
    return not is_ok(cluster) or cluster == focal.cluster


def _version_matches(focal: FocalNode, version: str) -> bool:
    return not focal.version or version == focal.version


def _matches_source(focal: FocalNode, sample: TrafficSample) -> bool:
    if not _cluster_matches(focal, sample.source_cluster):
        return False
    if sample.source_workload_namespace != focal.namespace:
        return False
    if focal.kind == NodeKind.WORKLOAD:
        return sample.source_workload == focal.name
    if focal.kind == NodeKind.APP:
        return sample.source_app == focal.name and _version_matches(focal, sample.source_version)
    return False


def _matches_dest(focal: FocalNode, sample: TrafficSample) -> bool:
    if not _cluster_matches(focal, sample.dest_cluster):
        return False
    if focal.kind == NodeKind.SERVICE:
        return (
            sample.dest_service_namespace == focal.namespace
            and sample.dest_service == focal.name
        )
    namespace = sample.dest_workload_namespace or sample.dest_service_namespace
    if namespace != focal.namespace:
        return False
    if focal.kind == NodeKind.WORKLOAD:
        return sample.dest_workload == focal.name
    return sample.dest_app == focal.name and _version_matches(focal, sample.dest_version)


def _focal_identity(focal: FocalNode, graph_type: GraphType) -> NodeIdentity:
    if focal.kind == NodeKind.SERVICE:
        return service_identity(focal.cluster, focal.namespace, focal.name).identity
    if focal.kind == NodeKind.WORKLOAD:
        return NodeIdentity(focal.cluster, focal.namespace, NodeKind.WORKLOAD, workload=focal.name)
    if graph_type == GraphType.VERSIONED_APP and focal.version:
        return NodeIdentity(
            focal.cluster, focal.namespace, NodeKind.APP, app=focal.name, version=focal.version
        )
    return NodeIdentity(focal.cluster, focal.namespace, NodeKind.APP, app=focal.name)
