"""Annotates edges with the share of traffic secured by mutual TLS."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender, require_namespace
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure
from meshgraph.graph.identity import resolve_sample, service_identity
from meshgraph.graph.model import Edge, MetadataKey, TrafficMap, is_ok
from meshgraph.graph.traffic import SecuritySample
from meshgraph.models.base import NodeKind

logger = structlog.get_logger()


@dataclass
class _EdgeSecurity:
    total: float = 0.0
    mtls: float = 0.0
    source_principals: set[str] = field(default_factory=set)
    dest_principals: set[str] = field(default_factory=set)

    def add(self, sample: SecuritySample) -> None:
        self.total += sample.rate
        if sample.is_mtls:
            self.mtls += sample.rate
        if sample.source_principal:
            self.source_principals.add(sample.source_principal)
        if sample.dest_principal:
            self.dest_principals.add(sample.dest_principal)


class SecurityPolicyAppender(Appender):
    name = "securityPolicy"

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> list[SecuritySample]:
        namespace = require_namespace(self, namespace)
        return await context.metrics.query_security_policy(namespace.name, namespace.window)

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
            logger.warning("security_policy_unavailable", namespace=namespace.name)
            return

        options = context.options
        totals: dict[str, tuple[Edge, _EdgeSecurity]] = {}
        for sample in fetched:
            if sample.rate <= 0:
                continue
            source, dest = resolve_sample(sample, options.graph_type, options.cluster)
            if source is None or dest is None:
                continue
            source_node = traffic_map.get(source.identity.key)
            dest_node = traffic_map.get(dest.identity.key)
            if source_node is None or dest_node is None:
                continue

            edges: list[Edge | None]
            if (
                options.inject_service_nodes
                and is_ok(sample.dest_service)
                and dest_node.kind != NodeKind.SERVICE
            ):
                hop = traffic_map.get(
                    service_identity(
                        sample.dest_cluster or options.cluster,
                        sample.dest_service_namespace,
                        sample.dest_service,
                    ).identity.key
                )
                if hop is None:
                    continue
                edges = [
                    source_node.find_edge(hop.id, sample.protocol),
                    hop.find_edge(dest_node.id, sample.protocol),
                ]
            else:
                edges = [source_node.find_edge(dest_node.id, sample.protocol)]

            for edge in edges:
                if edge is None:
                    continue
                _, security = totals.setdefault(edge.id, (edge, _EdgeSecurity()))
                security.add(sample)

        for edge, security in totals.values():
            if security.total <= 0:
                continue
            percent = 100.0 * security.mtls / security.total
            if percent > 0:
                edge.metadata[MetadataKey.IS_MTLS] = percent
            if security.source_principals:
                edge.metadata[MetadataKey.SOURCE_PRINCIPALS] = sorted(security.source_principals)
            if security.dest_principals:
                edge.metadata[MetadataKey.DEST_PRINCIPALS] = sorted(security.dest_principals)
        logger.debug("security_policy_applied", namespace=namespace.name, edges=len(totals))
