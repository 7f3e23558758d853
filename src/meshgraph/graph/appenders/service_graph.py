"""Reduces a workload-level map to services for the service graph type."""

from __future__ import annotations

from typing import Any

from meshgraph.graph.appenders.base import Appender
from meshgraph.graph.builder import reduce_to_service_graph
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.model import TrafficMap
from meshgraph.models.base import GraphType


class ServiceGraphAppender(Appender):
    """Runs after root marking, which decides the non-service nodes to keep."""

    name = "serviceGraph"
    namespaced = False
    finalizer = True

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        if not traffic_map or context.options.graph_type != GraphType.SERVICE:
            return
        reduce_to_service_graph(traffic_map)
