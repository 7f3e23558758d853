"""Flags nodes in namespaces the caller cannot see."""

from __future__ import annotations

from functools import partial
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import bounded
from meshgraph.graph.model import UNKNOWN, MetadataKey, TrafficMap
from meshgraph.models.base import NodeKind

logger = structlog.get_logger()


class AccessAppender(Appender):
    """Mandatory: a failed lookup aborts the request with the lookup's error."""

    name = "access"
    namespaced = False
    mandatory = True

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> set[str]:
        return await bounded(
            partial(context.cluster_state.get_accessible_namespaces),
            context.fetch_timeout,
            branch="accessible_namespaces",
        )

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        accessible = frozenset(fetched)
        context.accessible_namespaces = accessible
        if not traffic_map:
            return

        flagged = 0
        for node in traffic_map:
            if node.kind in (NodeKind.BOX, NodeKind.UNKNOWN) or node.namespace == UNKNOWN:
                continue
            if node.namespace not in accessible:
                node.metadata[MetadataKey.IS_INACCESSIBLE] = True
                flagged += 1
        if flagged:
            logger.info("inaccessible_nodes_flagged", count=flagged)
