"""Derive a node identity from one side of a traffic sample.

The graph type decides how telemetry labels collapse into nodes: a workload
graph has one node per workload, an app graph one node per app, and a
versioned-app graph one node per app version (keyed by its backing workload
when telemetry reports one).
"""

from __future__ import annotations

from dataclasses import dataclass

from meshgraph.graph.model import UNKNOWN, NodeIdentity, is_ok, is_ok_version
from meshgraph.graph.traffic import TrafficSample
from meshgraph.models.base import GraphType, NodeKind


@dataclass(frozen=True)
class ResolvedNode:
    """An identity plus the display labels worth keeping for it."""

    identity: NodeIdentity
    app: str = ""
    version: str = ""
    workload: str = ""
    service: str = ""


def resolve_identity(
    cluster: str,
    service_namespace: str,
    service: str,
    workload_namespace: str,
    workload: str,
    app: str,
    version: str,
    graph_type: GraphType,
) -> ResolvedNode | None:
    """Resolve labels to a node, or ``None`` if nothing identifies it."""
    namespace = workload_namespace if is_ok(workload_namespace) else service_namespace

    # telemetry could not attribute the caller at all
    if namespace == UNKNOWN and workload == UNKNOWN and app == UNKNOWN and service == "":
        return ResolvedNode(NodeIdentity(cluster, UNKNOWN, NodeKind.UNKNOWN))

    # a request to an unroutable destination, one per namespace
    if workload == UNKNOWN and app == UNKNOWN and service == UNKNOWN:
        return ResolvedNode(
            NodeIdentity(cluster, namespace, NodeKind.SERVICE, service=UNKNOWN),
            service=UNKNOWN,
        )

    workload_ok = is_ok(workload)
    app_ok = is_ok(app)
    service_ok = is_ok(service)
    if not (workload_ok or app_ok or service_ok):
        return None

    service_node = ResolvedNode(
        NodeIdentity(cluster, service_namespace, NodeKind.SERVICE, service=service),
        service=service,
    )
    workload_node = ResolvedNode(
        NodeIdentity(cluster, namespace, NodeKind.WORKLOAD, workload=workload),
        app=app if app_ok else "",
        version=version if is_ok(version) else "",
        workload=workload,
    )

    if graph_type in (GraphType.WORKLOAD, GraphType.SERVICE):
        if workload_ok:
            return workload_node
        return service_node if service_ok else None

    if app_ok:
        if graph_type == GraphType.VERSIONED_APP:
            if workload_ok:
                return ResolvedNode(
                    NodeIdentity(cluster, namespace, NodeKind.APP, app=app, workload=workload),
                    app=app,
                    version=version if is_ok(version) else "",
                    workload=workload,
                )
            if is_ok_version(version):
                return ResolvedNode(
                    NodeIdentity(cluster, namespace, NodeKind.APP, app=app, version=version),
                    app=app,
                    version=version,
                )
        return ResolvedNode(NodeIdentity(cluster, namespace, NodeKind.APP, app=app), app=app)

    if workload_ok:
        return workload_node
    return service_node


def service_identity(cluster: str, namespace: str, service: str) -> ResolvedNode:
    return ResolvedNode(
        NodeIdentity(cluster, namespace, NodeKind.SERVICE, service=service),
        service=service,
    )


def resolve_sample(
    sample: TrafficSample,
    graph_type: GraphType,
    default_cluster: str,
) -> tuple[ResolvedNode | None, ResolvedNode | None]:
    """Resolve the source and destination nodes of one sample."""
    source = resolve_identity(
        sample.source_cluster or default_cluster,
        sample.source_workload_namespace,
        "",
        sample.source_workload_namespace,
        sample.source_workload,
        sample.source_app,
        sample.source_version,
        graph_type,
    )
    dest = resolve_identity(
        sample.dest_cluster or default_cluster,
        sample.dest_service_namespace,
        sample.dest_service,
        sample.dest_workload_namespace,
        sample.dest_workload,
        sample.dest_app,
        sample.dest_version,
        graph_type,
    )
    return source, dest
