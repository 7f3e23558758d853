"""Flags workload and app nodes running without the mesh sidecar."""

from __future__ import annotations

from typing import Any

import structlog

from meshgraph.graph.appenders.base import (
    Appender,
    fetch_workloads,
    node_workloads,
    nodes_in,
    require_namespace,
)
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure
from meshgraph.graph.model import MetadataKey, TrafficMap
from meshgraph.models.base import NodeKind, WorkloadDefinition

logger = structlog.get_logger()

_CHECKED_KINDS = (NodeKind.WORKLOAD, NodeKind.APP)


class SidecarsCheckAppender(Appender):
    """Gateways, services and inaccessible nodes are never flagged."""

    name = "sidecarsCheck"

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> dict[str, dict[str, WorkloadDefinition]]:
        namespace = require_namespace(self, namespace)
        if not any(node.kind in _CHECKED_KINDS for node in nodes_in(traffic_map, namespace.name)):
            return {}
        return await fetch_workloads(traffic_map, context, namespace)

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        if not traffic_map or namespace is None:
            return
        if isinstance(fetched, FetchFailure):
            logger.warning("sidecar_check_skipped", namespace=namespace.name)
            return

        for node in nodes_in(traffic_map, namespace.name):
            if node.kind not in _CHECKED_KINDS or node.flag(MetadataKey.IS_INACCESSIBLE):
                continue
            workloads = node_workloads(node, fetched.get(node.cluster, {}))
            if not workloads or any(w.is_gateway for w in workloads):
                continue
            if any(not w.has_sidecar for w in workloads):
                node.metadata[MetadataKey.HAS_MISSING_SIDECAR] = True
