"""Adds services and workloads that are defined but saw no traffic in the window."""

from __future__ import annotations

from functools import partial
from typing import Any

import structlog

from meshgraph.graph.appenders.base import Appender, require_namespace
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure, fan_out
from meshgraph.graph.identity import resolve_identity, service_identity
from meshgraph.graph.model import MetadataKey, TrafficMap
from meshgraph.models.base import GraphType, ServiceDefinition, WorkloadDefinition

logger = structlog.get_logger()


class IdleNodeAppender(Appender):
    name = "idleNode"

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> tuple[list[WorkloadDefinition], list[ServiceDefinition]]:
        namespace = require_namespace(self, namespace)
        lookups = await fan_out(
            {
                "workloads": partial(
                    context.cluster_state.list_workloads, namespace.name, namespace.cluster
                ),
                "services": partial(
                    context.cluster_state.list_services, namespace.name, namespace.cluster
                ),
            },
            None,
            mandatory=True,
            label=f"idle:{namespace.name}",
        )
        return lookups["workloads"], lookups["services"]

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
            logger.warning("idle_nodes_unavailable", namespace=namespace.name)
            return

        workloads, services = fetched
        options = context.options
        added = 0

        if options.inject_service_nodes or options.graph_type == GraphType.SERVICE:
            for service in services:
                resolved = service_identity(namespace.cluster, namespace.name, service.name)
                node, created = traffic_map.get_or_add(resolved.identity, service=service.name)
                if created:
                    node.metadata[MetadataKey.IS_IDLE] = True
                    added += 1

        if options.graph_type != GraphType.SERVICE:
            for workload in workloads:
                resolved = resolve_identity(
                    namespace.cluster,
                    namespace.name,
                    "",
                    namespace.name,
                    workload.name,
                    workload.app,
                    workload.version,
                    options.graph_type,
                )
                if resolved is None:
                    continue
                node, created = traffic_map.get_or_add(
                    resolved.identity,
                    app=resolved.app,
                    version=resolved.version,
                    workload=resolved.workload,
                )
                if created:
                    node.metadata[MetadataKey.IS_IDLE] = True
                    added += 1

        logger.debug("idle_nodes_added", namespace=namespace.name, count=added)
