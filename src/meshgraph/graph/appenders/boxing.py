"""Groups nodes under synthetic app, namespace and cluster box nodes.

App boxes nest in namespace boxes, which nest in cluster boxes. A node keeps
the innermost box it belongs to as its parent.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.model import UNKNOWN, MetadataKey, Node, NodeIdentity, TrafficMap
from meshgraph.models.base import BoxKind, GraphType, NodeKind

logger = structlog.get_logger()


def _box(traffic_map: TrafficMap, identity: NodeIdentity, kind: BoxKind) -> Node:
    box, created = traffic_map.get_or_add(identity)
    if created:
        box.metadata[MetadataKey.IS_BOX] = str(kind)
    return box


class BoxingAppender(Appender):
    name = "boxing"
    namespaced = False

    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        box_by = context.options.box_by
        if not traffic_map or not box_by:
            return

        members = [node for node in traffic_map if node.kind != NodeKind.BOX]
        boxes = 0

        if BoxKind.APP in box_by and context.options.graph_type in (
            GraphType.APP,
            GraphType.VERSIONED_APP,
        ):
            by_app: dict[tuple[str, str, str], list[Node]] = defaultdict(list)
            for node in members:
                if node.kind == NodeKind.APP and node.app:
                    by_app[(node.cluster, node.namespace, node.app)].append(node)
            for (cluster, ns, app), nodes in sorted(by_app.items()):
                if len(nodes) < 2:
                    continue
                identity = NodeIdentity(cluster, ns, NodeKind.BOX, app=app)
                box = _box(traffic_map, identity, BoxKind.APP)
                boxes += 1
                for node in nodes:
                    node.parent = box.id

        if BoxKind.NAMESPACE in box_by:
            by_namespace: dict[tuple[str, str], list[Node]] = defaultdict(list)
            for node in members:
                if node.kind != NodeKind.UNKNOWN and node.namespace != UNKNOWN:
                    by_namespace[(node.cluster, node.namespace)].append(node)
            for (cluster, ns), nodes in sorted(by_namespace.items()):
                box = _box(traffic_map, NodeIdentity(cluster, ns, NodeKind.BOX), BoxKind.NAMESPACE)
                boxes += 1
                for node in nodes:
                    if node.parent is None:
                        node.parent = box.id
                    else:
                        traffic_map[node.parent].parent = box.id

        clusters = {node.cluster for node in members}
        if BoxKind.CLUSTER in box_by and len(clusters) > 1:
            for cluster in sorted(clusters):
                _box(traffic_map, NodeIdentity(cluster, "", NodeKind.BOX), BoxKind.CLUSTER)
                boxes += 1
            for node in members:
                outer = node
                while outer.parent is not None:
                    outer = traffic_map[outer.parent]
                if outer is not traffic_map[_cluster_key(node.cluster)]:
                    outer.parent = _cluster_key(node.cluster)

        logger.debug("nodes_boxed", box_by=[str(b) for b in box_by], boxes=boxes)


def _cluster_key(cluster: str) -> str:
    return NodeIdentity(cluster, "", NodeKind.BOX).key
