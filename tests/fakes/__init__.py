"""In-memory collaborators for graph pipeline tests.

Both fakes record every call and can be told to fail or stall a given
``(method, namespace)`` pair.
"""

import asyncio
from typing import Any

from meshgraph.config.settings import Settings
from meshgraph.connectors.base import ClusterStateLookup
from meshgraph.exceptions import AccessError
from meshgraph.graph.context import AppenderContext, NamespaceContext
from meshgraph.graph.options import FocalNode, GraphQuery, parse_options
from meshgraph.graph.traffic import SecuritySample, TrafficSample
from meshgraph.models.base import (
    NamespaceInfo,
    NodeKind,
    ServiceDefinition,
    TimeWindow,
    WorkloadDefinition,
)
from meshgraph.models.health import RequestHealth
from meshgraph.observability.base import MetricsClient


class _Scripted:
    def __init__(
        self,
        failures: dict[tuple[str, str], Exception] | None = None,
        delays: dict[tuple[str, str], float] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.calls: list[tuple[str, str]] = []

    async def _enter(self, method: str, namespace: str) -> None:
        self.calls.append((method, namespace))
        delay = self.delays.get((method, namespace))
        if delay:
            await asyncio.sleep(delay)
        failure = self.failures.get((method, namespace))
        if failure is not None:
            raise failure

    def called(self, method: str) -> list[str]:
        return [ns for name, ns in self.calls if name == method]


class FakeClusterState(_Scripted, ClusterStateLookup):
    provider = "fake"

    def __init__(
        self,
        namespaces: dict[str, float | None] | None = None,
        workloads: dict[str, list[WorkloadDefinition]] | None = None,
        services: dict[str, list[ServiceDefinition]] | None = None,
        accessible: set[str] | None = None,
        cluster: str = "east",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.namespaces = dict(namespaces or {})
        self.workloads = dict(workloads or {})
        self.services = dict(services or {})
        self.accessible = accessible
        self.cluster = cluster
        self.closed = False

    async def get_namespace(self, name: str, cluster: str) -> NamespaceInfo:
        await self._enter("get_namespace", name)
        if name not in self.namespaces:
            raise AccessError(f"Access to namespace [{name}] denied")
        return NamespaceInfo(name=name, cluster=self.cluster, created_at=self.namespaces[name])

    async def get_accessible_namespaces(self) -> set[str]:
        await self._enter("get_accessible_namespaces", "*")
        if self.accessible is not None:
            return set(self.accessible)
        return set(self.namespaces)

    async def list_workloads(self, namespace: str, cluster: str) -> list[WorkloadDefinition]:
        await self._enter("list_workloads", namespace)
        return list(self.workloads.get(namespace, []))

    async def list_services(self, namespace: str, cluster: str) -> list[ServiceDefinition]:
        await self._enter("list_services", namespace)
        return list(self.services.get(namespace, []))

    async def close(self) -> None:
        self.closed = True


class FakeMetricsClient(_Scripted, MetricsClient):
    source_name = "fake"

    def __init__(
        self,
        traffic: dict[str, list[TrafficSample]] | None = None,
        node_traffic: list[TrafficSample] | None = None,
        security: dict[str, list[SecuritySample]] | None = None,
        health: dict[tuple[str, NodeKind], dict[str, RequestHealth]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.traffic = dict(traffic or {})
        self.node_traffic = list(node_traffic or [])
        self.security = dict(security or {})
        self.health = dict(health or {})
        self.windows: dict[str, TimeWindow] = {}
        self.closed = False

    async def query_traffic(self, namespace: str, window: TimeWindow) -> list[TrafficSample]:
        self.windows[namespace] = window
        await self._enter("query_traffic", namespace)
        return list(self.traffic.get(namespace, []))

    async def query_node_traffic(self, node: FocalNode, window: TimeWindow) -> list[TrafficSample]:
        await self._enter("query_node_traffic", node.namespace)
        return list(self.node_traffic)

    async def query_security_policy(
        self, namespace: str, window: TimeWindow
    ) -> list[SecuritySample]:
        await self._enter("query_security_policy", namespace)
        return list(self.security.get(namespace, []))

    async def query_request_health(
        self, namespace: str, kind: NodeKind, window: TimeWindow
    ) -> dict[str, RequestHealth]:
        await self._enter("query_request_health", namespace)
        return dict(self.health.get((namespace, kind), {}))

    async def close(self) -> None:
        self.closed = True


def http_sample(
    source: tuple[str, str, str, str] | None,
    dest: tuple[str, str, str, str, str],
    rate: float,
    code: str = "200",
    cluster: str = "east",
    **overrides: Any,
) -> TrafficSample:
    """Build an HTTP sample.

    ``source`` is ``(namespace, workload, app, version)`` or ``None`` for an
    unknown caller; ``dest`` is ``(namespace, service, workload, app, version)``.
    """
    src_ns, src_wl, src_app, src_ver = source or ("unknown", "unknown", "unknown", "unknown")
    dst_ns, dst_svc, dst_wl, dst_app, dst_ver = dest
    fields: dict[str, Any] = {
        "source_cluster": cluster,
        "source_workload_namespace": src_ns,
        "source_workload": src_wl,
        "source_app": src_app,
        "source_version": src_ver,
        "dest_cluster": cluster,
        "dest_service_namespace": dst_ns,
        "dest_service": dst_svc,
        "dest_workload_namespace": dst_ns,
        "dest_workload": dst_wl,
        "dest_app": dst_app,
        "dest_version": dst_ver,
        "response_code": code,
        "host": f"{dst_svc}.{dst_ns}.svc.cluster.local",
        "rate": rate,
    }
    fields.update(overrides)
    return TrafficSample(**fields)


def workload(
    name: str,
    namespace: str,
    app: str = "",
    version: str = "",
    pods: int = 1,
    **overrides: Any,
) -> WorkloadDefinition:
    fields: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "cluster": "east",
        "app": app,
        "version": version,
        "pod_count": pods,
        "desired_replicas": pods,
        "available_replicas": pods,
    }
    fields.update(overrides)
    return WorkloadDefinition(**fields)


def service(name: str, namespace: str, **overrides: Any) -> ServiceDefinition:
    return ServiceDefinition(name=name, namespace=namespace, cluster="east", **overrides)


# ── Request helpers ──────────────────────────────────────────────────

QUERY_TIME = 1_700_000_000.0


def make_settings(**overrides: Any) -> Settings:
    defaults: dict[str, Any] = {
        "default_cluster": "east",
        "metrics_query_timeout_seconds": 1.0,
        "cluster_state_timeout_seconds": 1.0,
        "request_timeout_seconds": 5.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def make_context(
    cluster_state: FakeClusterState | None = None,
    metrics: FakeMetricsClient | None = None,
    fetch_timeout: float = 1.0,
    **query: Any,
) -> AppenderContext:
    """Parse a query and wrap it in a context, every namespace fully in window."""
    query.setdefault("query_time", str(QUERY_TIME))
    options = parse_options(GraphQuery(**query), make_settings())
    namespaces = {
        name: NamespaceContext(
            name=name,
            cluster=options.cluster,
            duration_seconds=options.duration_seconds,
            query_time=options.query_time,
        )
        for name in options.namespaces
    }
    return AppenderContext(
        options=options,
        namespaces=namespaces,
        cluster_state=cluster_state or FakeClusterState(),
        metrics=metrics or FakeMetricsClient(),
        fetch_timeout=fetch_timeout,
    )
