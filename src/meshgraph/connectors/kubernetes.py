"""Cluster-state lookup backed by the Kubernetes API.

Reads namespaces, workloads (deployments and statefulsets with their pods)
and services. Kubernetes RBAC decides visibility: a 403 becomes
``AccessError`` and a 404 becomes ``NamespaceNotFoundError``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

import structlog

from meshgraph.connectors.base import ClusterStateLookup
from meshgraph.exceptions import (
    AccessError,
    MeshGraphError,
    NamespaceNotFoundError,
    UpstreamQueryError,
    error_context,
)
from meshgraph.graph.fanout import fan_out
from meshgraph.models.base import NamespaceInfo, ServiceDefinition, WorkloadDefinition

logger = structlog.get_logger()


def _api_error(exc: Any, operation: str, namespace: str) -> MeshGraphError:
    status = getattr(exc, "status", None)
    extra = {"namespace": namespace}
    if status == 403:
        return AccessError(f"Access to namespace [{namespace}] denied", extra=extra)
    if status == 404:
        return NamespaceNotFoundError(f"Namespace [{namespace}] not found", extra=extra)
    return UpstreamQueryError(
        f"Kubernetes {operation} failed for namespace [{namespace}]: {getattr(exc, 'reason', exc)}",
        extra=extra,
    )


def _selects(selector: dict[str, str] | None, labels: dict[str, str] | None) -> bool:
    if not selector:
        return False
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


class KubernetesClusterState(ClusterStateLookup):
    """``ClusterStateLookup`` for a single cluster.

    The API client is created lazily on first use so constructing this
    object never touches kubeconfig.
    """

    provider = "kubernetes"

    def __init__(
        self,
        cluster: str = "Kubernetes",
        in_cluster: bool = False,
        app_label: str = "app",
        version_label: str = "version",
        sidecar_annotation: str = "sidecar.istio.io/status",
        sidecar_container: str = "istio-proxy",
        gateway_label: str = "istio",
        health_annotation_prefix: str = "health.meshgraph.io/",
    ) -> None:
        self._cluster = cluster
        self._in_cluster = in_cluster
        self._app_label = app_label
        self._version_label = version_label
        self._sidecar_annotation = sidecar_annotation
        self._sidecar_container = sidecar_container
        self._gateway_label = gateway_label
        self._health_prefix = health_annotation_prefix
        self._api_client: Any = None
        self._core_api: Any = None
        self._apps_api: Any = None

    async def _ensure_client(self) -> None:
        if self._core_api is not None:
            return
        from kubernetes_asyncio import client, config

        if self._in_cluster:
            config.load_incluster_config()
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                await config.load_kube_config()
        self._api_client = client.ApiClient()
        self._core_api = client.CoreV1Api(self._api_client)
        self._apps_api = client.AppsV1Api(self._api_client)
        logger.info("kubernetes_client_initialized", cluster=self._cluster)

    async def _call(
        self,
        operation: str,
        namespace: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        from kubernetes_asyncio.client.exceptions import ApiException

        await self._ensure_client()
        with error_context(UpstreamQueryError, detail=f"kubernetes {operation} failed"):
            try:
                return await call()
            except ApiException as exc:
                logger.warning(
                    "kubernetes_api_error",
                    operation=operation,
                    namespace=namespace,
                    status=exc.status,
                )
                raise _api_error(exc, operation, namespace) from exc

    def _serves(self, cluster: str) -> bool:
        return not cluster or cluster == self._cluster

    def _check_cluster(self, namespace: str, cluster: str) -> None:
        if not self._serves(cluster):
            raise NamespaceNotFoundError(
                f"Namespace [{namespace}] not found in cluster [{cluster}]",
                extra={"namespace": namespace, "cluster": cluster},
            )

    def _check_listing(self, namespace: str, cluster: str) -> None:
        # nodes from other clusters reach here through annotators; they degrade
        if not self._serves(cluster):
            raise UpstreamQueryError(
                f"Cluster [{cluster}] is not served by this lookup [{self._cluster}]",
                extra={"namespace": namespace, "cluster": cluster},
            )

    def _health_annotations(self, annotations: dict[str, str] | None) -> dict[str, str]:
        return {
            key: value
            for key, value in (annotations or {}).items()
            if key.startswith(self._health_prefix)
        }

    async def get_namespace(self, name: str, cluster: str) -> NamespaceInfo:
        self._check_cluster(name, cluster)
        ns = await self._call("read_namespace", name, lambda: self._core_api.read_namespace(name))
        created = ns.metadata.creation_timestamp
        return NamespaceInfo(
            name=name,
            cluster=self._cluster,
            created_at=created.timestamp() if created is not None else None,
        )

    async def get_accessible_namespaces(self) -> set[str]:
        result = await self._call("list_namespace", "*", lambda: self._core_api.list_namespace())
        return {item.metadata.name for item in result.items}

    async def list_workloads(self, namespace: str, cluster: str) -> list[WorkloadDefinition]:
        self._check_listing(namespace, cluster)
        await self._ensure_client()
        listed = await fan_out(
            {
                "deployments": partial(
                    self._call,
                    "list_deployments",
                    namespace,
                    lambda: self._apps_api.list_namespaced_deployment(namespace),
                ),
                "statefulsets": partial(
                    self._call,
                    "list_statefulsets",
                    namespace,
                    lambda: self._apps_api.list_namespaced_stateful_set(namespace),
                ),
                "pods": partial(
                    self._call,
                    "list_pods",
                    namespace,
                    lambda: self._core_api.list_namespaced_pod(namespace),
                ),
            },
            None,
            mandatory=True,
            label=f"kubernetes:{namespace}",
        )
        pods = listed["pods"].items
        workloads = []
        for workload_type, key in (("Deployment", "deployments"), ("StatefulSet", "statefulsets")):
            for item in listed[key].items:
                workloads.append(self._workload(item, workload_type, namespace, pods))
        return workloads

    def _workload(
        self,
        item: Any,
        workload_type: str,
        namespace: str,
        pods: list[Any],
    ) -> WorkloadDefinition:
        template = item.spec.template
        labels = template.metadata.labels or {}
        selector = item.spec.selector.match_labels if item.spec.selector else None
        matching = [pod for pod in pods if _selects(selector, pod.metadata.labels)]

        if matching:
            has_sidecar = all(self._pod_has_sidecar(pod) for pod in matching)
        else:
            has_sidecar = self._pod_has_sidecar(template)

        return WorkloadDefinition(
            name=item.metadata.name,
            namespace=namespace,
            cluster=self._cluster,
            workload_type=workload_type,
            app=labels.get(self._app_label, ""),
            version=labels.get(self._version_label, ""),
            has_sidecar=has_sidecar,
            is_gateway=self._gateway_label in labels,
            pod_count=len(matching),
            desired_replicas=item.spec.replicas or 0,
            available_replicas=(item.status.available_replicas or 0) if item.status else 0,
            health_annotations=self._health_annotations(item.metadata.annotations),
        )

    def _pod_has_sidecar(self, pod: Any) -> bool:
        annotations = pod.metadata.annotations or {}
        if self._sidecar_annotation in annotations:
            return True
        containers = pod.spec.containers if pod.spec else []
        return any(c.name == self._sidecar_container for c in containers or [])

    async def list_services(self, namespace: str, cluster: str) -> list[ServiceDefinition]:
        self._check_listing(namespace, cluster)
        result = await self._call(
            "list_services",
            namespace,
            lambda: self._core_api.list_namespaced_service(namespace),
        )
        return [
            ServiceDefinition(
                name=item.metadata.name,
                namespace=namespace,
                cluster=self._cluster,
                app=(item.metadata.labels or {}).get(self._app_label, ""),
                health_annotations=self._health_annotations(item.metadata.annotations),
            )
            for item in result.items
        ]

    async def close(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
            self._core_api = None
            self._apps_api = None
