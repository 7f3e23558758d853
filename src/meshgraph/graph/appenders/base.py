"""Appender contract and the pipeline that runs appenders in order.

An appender works in two phases. ``fetch`` performs the appender's external
I/O and returns a private result without touching the map; the pipeline runs
the fetches for every namespace in scope concurrently, joins them, then calls
``apply`` once per namespace on the calling task. Only ``apply`` mutates the
traffic map, so no branch ever writes to shared state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from functools import partial
from typing import Any, ClassVar

import structlog

from meshgraph.exceptions import InternalError
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.fanout import FetchFailure, fan_out
from meshgraph.graph.model import Node, TrafficMap
from meshgraph.models.base import NodeKind, WorkloadDefinition
from meshgraph.observability.tracing import appender_span

logger = structlog.get_logger()


class Appender(ABC):
    """One ordered annotator over the traffic map.

    Attributes
    ----------
    name:
        Stable name used to request the appender and in logs.
    namespaced:
        ``True`` to be fetched and applied once per namespace in scope,
        ``False`` to run once over the whole map.
    mandatory:
        ``True`` if a failed fetch aborts the request. Otherwise the
        appender receives a ``FetchFailure`` and applies a fallback.
    finalizer:
        Finalizers run after every regular appender.
    """

    name: ClassVar[str]
    namespaced: ClassVar[bool] = True
    mandatory: ClassVar[bool] = False
    finalizer: ClassVar[bool] = False

    def is_finalizer(self) -> bool:
        return self.finalizer

    async def fetch(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
    ) -> Any:
        """External reads needed by ``apply``. Must not mutate the map."""
        return None

    @abstractmethod
    def apply(
        self,
        traffic_map: TrafficMap,
        context: AppenderContext,
        namespace: NamespaceContext | None,
        fetched: Any,
    ) -> None:
        """Annotate the map. ``fetched`` may be a ``FetchFailure``."""


class AppenderPipeline:
    """Runs regular appenders in declared order, then the finalizers.

    Parameters
    ----------
    regular:
        Regular appenders, in run order.
    finalizers:
        Finalizer appenders, in run order.
    fetch_timeout:
        Deadline applied to each per-namespace fetch branch.
    """

    def __init__(
        self,
        regular: list[Appender],
        finalizers: list[Appender],
        fetch_timeout: float | None = 10.0,
    ) -> None:
        for appender in regular:
            if appender.is_finalizer():
                raise InternalError(f"Finalizer [{appender.name}] listed as a regular appender")
        for appender in finalizers:
            if not appender.is_finalizer():
                raise InternalError(f"Regular appender [{appender.name}] listed as a finalizer")
        self._regular = list(regular)
        self._finalizers = list(finalizers)
        self._fetch_timeout = fetch_timeout

    @property
    def appenders(self) -> list[Appender]:
        return [*self._regular, *self._finalizers]

    @property
    def names(self) -> list[str]:
        return [appender.name for appender in self.appenders]

    async def run(self, traffic_map: TrafficMap, context: AppenderContext) -> None:
        for appender in self.appenders:
            if not traffic_map:
                logger.debug("appender_skipped_empty_map", appender=appender.name)
                continue
            with appender_span(appender.name, appender.is_finalizer(), len(traffic_map)):
                await self._run_one(appender, traffic_map, context)

    async def _run_one(
        self,
        appender: Appender,
        traffic_map: TrafficMap,
        context: AppenderContext,
    ) -> None:
        if not appender.namespaced:
            results = await fan_out(
                {appender.name: partial(appender.fetch, traffic_map, context, None)},
                None,
                mandatory=appender.mandatory,
                label=appender.name,
            )
            appender.apply(traffic_map, context, None, results[appender.name])
            return

        scopes = [context.namespaces[name] for name in sorted(context.namespaces)]
        results = await fan_out(
            {scope.name: partial(appender.fetch, traffic_map, context, scope) for scope in scopes},
            self._fetch_timeout,
            mandatory=appender.mandatory,
            label=appender.name,
        )
        for scope in scopes:
            appender.apply(traffic_map, context, scope, results[scope.name])


# ── Helpers shared by appenders ──────────────────────────────────────


def nodes_in(traffic_map: TrafficMap, namespace: str) -> list[Node]:
    """Nodes of a namespace, boxes and unknown nodes excluded."""
    return [
        node
        for node in traffic_map
        if node.namespace == namespace and node.kind not in (NodeKind.BOX, NodeKind.UNKNOWN)
    ]


def require_namespace(appender: Appender, namespace: NamespaceContext | None) -> NamespaceContext:
    """The namespace a namespaced appender was invoked for."""
    if namespace is None:
        raise InternalError(
            f"Appender [{appender.name}] called without a namespace",
            extra={"appender": appender.name},
        )
    return namespace


def clusters_of(traffic_map: TrafficMap, namespace: str) -> list[str]:
    return sorted({node.cluster for node in nodes_in(traffic_map, namespace)})


async def fetch_workloads(
    traffic_map: TrafficMap,
    context: AppenderContext,
    namespace: NamespaceContext,
) -> dict[str, dict[str, WorkloadDefinition]]:
    """cluster → workload name → definition for the namespace's clusters.

    A cluster whose lookup failed is left out, so callers treat its nodes as
    unknown rather than as having no workloads.
    """
    clusters = clusters_of(traffic_map, namespace.name)
    calls = {
        cluster: partial(context.cluster_state.list_workloads, namespace.name, cluster)
        for cluster in clusters
    }
    listed = await fan_out(calls, None, mandatory=False, label=f"workloads:{namespace.name}")
    return {
        cluster: {w.name: w for w in result}
        for cluster, result in listed.items()
        if not isinstance(result, FetchFailure)
    }


def node_workloads(
    node: Node,
    workloads: dict[str, WorkloadDefinition],
) -> list[WorkloadDefinition]:
    """Workload definitions that back a workload or app node."""
    if node.kind == NodeKind.WORKLOAD or (node.kind == NodeKind.APP and node.workload):
        found = workloads.get(node.workload)
        return [found] if found is not None else []
    if node.kind == NodeKind.APP:
        return [
            w
            for w in workloads.values()
            if w.app == node.app and (not node.version or w.version == node.version)
        ]
    return []
