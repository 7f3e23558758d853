"""Prunes nodes that carry no traffic and have nothing running behind them."""

from __future__ import annotations

from functools import partial
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender, fetch_workloads, node_workloads
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure, fan_out
from meshgraph.graph.model import Edge, MetadataKey, Node, TrafficMap
from meshgraph.models.base import NodeKind, WorkloadDefinition

logger = structlog.get_logger()

_PROTECTED_FLAGS = (MetadataKey.IS_IDLE, MetadataKey.IS_FOCAL, MetadataKey.IS_ROOT)

Lookups = dict[str, dict[str, dict[str, WorkloadDefinition]]]


class DeadNodeAppender(Appender):
    """Terminal prune.

    A service node is dead when nothing reaches it and it reaches nothing. A
    workload-backed node without traffic is dead when its workload is gone or
    has no pods.
    Removing a node removes the edges into it, which may leave further dead
    nodes, so the pass repeats until nothing changes. Nodes whose namespace
    or cluster workload lookup failed are kept.
    """

    name = "deadNode"
    namespaced = False
    finalizer = True

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> dict[str, Any]:
        calls = {
            name: partial(fetch_workloads, traffic_map, context, scope)
            for name, scope in sorted(context.namespaces.items())
        }
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
        lookups: Lookups = {}
        if not isinstance(fetched, FetchFailure):
            lookups = {
                ns: result
                for ns, result in fetched.items()
                if not isinstance(result, FetchFailure)
            }

        removed = 0
        while True:
            inbound = traffic_map.inbound()
            dead = [node.id for node in traffic_map if self._is_dead(node, inbound, lookups)]
            if not dead:
                break
            for key in dead:
                traffic_map.remove(key)
            removed += len(dead)

        removed += _remove_empty_boxes(traffic_map)
        if removed:
            logger.info("dead_nodes_removed", count=removed)

    def _is_dead(self, node: Node, inbound: dict[str, list[Edge]], lookups: Lookups) -> bool:
        if node.kind in (NodeKind.UNKNOWN, NodeKind.BOX):
            return False
        if any(node.flag(flag) for flag in _PROTECTED_FLAGS):
            return False

        inbound_rate = sum(edge.traffic.rate for edge in inbound.get(node.id, []))
        if node.kind == NodeKind.SERVICE:
            return not node.edges and inbound_rate <= 0

        if inbound_rate > 0 or any(edge.traffic.rate > 0 for edge in node.edges):
            return False

        listed = lookups.get(node.namespace, {}).get(node.cluster)
        if listed is None:
            return False
        workloads = node_workloads(node, listed)
        if not workloads:
            return True
        return sum(w.pod_count for w in workloads) == 0


def _remove_empty_boxes(traffic_map: TrafficMap) -> int:
    removed = 0
    while True:
        parents = {node.parent for node in traffic_map if node.parent is not None}
        empty = [
            node.id for node in traffic_map if node.kind == NodeKind.BOX and node.id not in parents
        ]
        if not empty:
            return removed
        for key in empty:
            traffic_map.remove(key)
        removed += len(empty)
