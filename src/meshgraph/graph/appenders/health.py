"""Attaches health samples to every accessible node, in one pass, last.

Nodes are grouped by (namespace, kind) and each group is answered by a
single batched health query over that namespace's window. Out-of-scope
namespaces use the requested window. Versioned-app nodes get app health in
``healthDataApp`` and their own workload health in ``healthData``.
"""

from __future__ import annotations

from collections import defaultdict
from functools import partial
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender, node_workloads
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure, fan_out
from meshgraph.graph.model import UNKNOWN, MetadataKey, Node, TrafficMap
from meshgraph.models.base import NodeKind, ServiceDefinition, WorkloadDefinition
from meshgraph.models.health import HealthSample, RequestHealth, WorkloadStatus

logger = structlog.get_logger()

_HEALTH_KINDS = (NodeKind.APP, NodeKind.SERVICE, NodeKind.WORKLOAD)

# fetch result keys
_REQUESTS = "requests"
_WORKLOADS = "workloads"
_SERVICES = "services"


def _health_nodes(traffic_map: TrafficMap) -> list[Node]:
    return [
        node
        for node in traffic_map
        if node.kind in _HEALTH_KINDS
        and node.namespace != UNKNOWN
        and not node.flag(MetadataKey.IS_INACCESSIBLE)
    ]


def _groups(nodes: list[Node]) -> dict[tuple[str, NodeKind], list[Node]]:
    groups: dict[tuple[str, NodeKind], list[Node]] = defaultdict(list)
    for node in nodes:
        groups[(node.namespace, node.kind)].append(node)
        if node.kind == NodeKind.APP and node.workload:
            groups[(node.namespace, NodeKind.WORKLOAD)].append(node)
    return groups


class HealthAppender(Appender):
    """Always the last finalizer.

    A failed or timed-out group gives every node in it the explicit no-data
    marker; other groups are unaffected.
    """

    name = "health"
    namespaced = False
    finalizer = True

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> dict[tuple[str, ...], Any]:
        nodes = _health_nodes(traffic_map)
        calls: dict[tuple[str, ...], Any] = {}
        for ns, kind in sorted(_groups(nodes)):
            calls[(_REQUESTS, ns, str(kind))] = partial(
                context.metrics.query_request_health, ns, kind, context.window(ns)
            )
        for ns, cluster in sorted({(node.namespace, node.cluster) for node in nodes}):
            calls[(_WORKLOADS, ns, cluster)] = partial(
                context.cluster_state.list_workloads, ns, cluster
            )
            calls[(_SERVICES, ns, cluster)] = partial(
                context.cluster_state.list_services, ns, cluster
            )
        return await fan_out(calls, context.fetch_timeout, mandatory=False, label=self.name)

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        if not traffic_map:
            return
        if isinstance(fetched, FetchFailure):
            fetched = {}

        results = _HealthResults(fetched)
        no_data = 0
        for node in _health_nodes(traffic_map):
            config = results.health_config(node)
            if config:
                node.metadata[MetadataKey.HAS_HEALTH_CONFIG] = config

            if node.kind == NodeKind.APP and node.workload:
                app_sample = results.sample(node, NodeKind.APP, node.app)
                node.metadata[MetadataKey.HEALTH_DATA_APP] = app_sample
                sample = results.sample(node, NodeKind.WORKLOAD, node.workload)
            elif node.kind == NodeKind.APP:
                sample = results.sample(node, NodeKind.APP, node.app)
            elif node.kind == NodeKind.SERVICE:
                sample = results.sample(node, NodeKind.SERVICE, node.service)
            else:
                sample = results.sample(node, NodeKind.WORKLOAD, node.workload)
            node.metadata[MetadataKey.HEALTH_DATA] = sample
            if not sample.has_data:
                no_data += 1

        for key in results.failed_groups():
            logger.warning("health_group_unavailable", namespace=key[1], kind=key[2])
        logger.info("health_attached", nodes_without_data=no_data)


class _HealthResults:
    """Read-side view over the joined health fetch."""

    def __init__(self, fetched: dict[tuple[str, ...], Any]) -> None:
        self._fetched = fetched

    def _ok(self, key: tuple[str, ...]) -> Any:
        value = self._fetched.get(key)
        return None if isinstance(value, FetchFailure) else value

    def failed_groups(self) -> list[tuple[str, ...]]:
        return sorted(
            key
            for key, value in self._fetched.items()
            if key[0] == _REQUESTS and isinstance(value, FetchFailure)
        )

    def workloads(self, node: Node) -> list[WorkloadDefinition]:
        listed = self._ok((_WORKLOADS, node.namespace, node.cluster)) or []
        return node_workloads(node, {w.name: w for w in listed})

    def service(self, node: Node) -> ServiceDefinition | None:
        listed = self._ok((_SERVICES, node.namespace, node.cluster)) or []
        for service in listed:
            if service.name == node.service:
                return service
        return None

    def health_config(self, node: Node) -> dict[str, str]:
        if node.kind == NodeKind.SERVICE:
            service = self.service(node)
            return dict(service.health_annotations) if service else {}
        if node.kind == NodeKind.WORKLOAD:
            found = self.workloads(node)
            return dict(found[0].health_annotations) if found else {}
        return {}

    def sample(self, node: Node, kind: NodeKind, name: str) -> HealthSample:
        batch: dict[str, RequestHealth] | None = self._ok((_REQUESTS, node.namespace, str(kind)))
        requests = batch.get(name) if batch is not None else None
        if requests is None:
            sample = HealthSample.no_data()
        else:
            sample = HealthSample(requests=requests, health_annotations=self.health_config(node))
        sample.missing_sidecar = node.flag(MetadataKey.HAS_MISSING_SIDECAR)
        if kind != NodeKind.SERVICE:
            sample.workload_statuses = [
                WorkloadStatus(
                    name=w.name,
                    desired_replicas=w.desired_replicas,
                    available_replicas=w.available_replicas,
                    pod_count=w.pod_count,
                )
                for w in self.workloads(node)
            ]
        return sample
