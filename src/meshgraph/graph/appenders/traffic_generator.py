"""Marks traffic generators: nodes that send traffic but receive none."""

from __future__ import annotations

from typing import Any

from meshgraph.graph.appenders.base import Appender
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.model import MetadataKey, TrafficMap
from meshgraph.models.base import NodeKind


class TrafficGeneratorAppender(Appender):
    name = "trafficGenerator"
    namespaced = False
    finalizer = True

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        if not traffic_map:
            return
        inbound = traffic_map.inbound()
        for node in traffic_map:
            if node.kind == NodeKind.BOX:
                continue
            if node.edges and node.id not in inbound:
                node.metadata[MetadataKey.IS_ROOT] = True
