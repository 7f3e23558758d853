"""Read-only cluster-state lookup consumed by the graph pipeline."""

from abc import ABC, abstractmethod

from meshgraph.models.base import NamespaceInfo, ServiceDefinition, WorkloadDefinition


class ClusterStateLookup(ABC):
    """Abstract interface over the cluster-state cache.

    Implementations are shared by concurrent requests and must be safe for
    concurrent reads. Access checks are the implementation's job: a namespace
    the caller cannot see raises ``AccessError`` (or
    ``NamespaceNotFoundError``), which the pipeline surfaces unchanged.
    """

    provider: str

    @abstractmethod
    async def get_namespace(self, name: str, cluster: str) -> NamespaceInfo:
        """Get one namespace, access-checked."""

    @abstractmethod
    async def get_accessible_namespaces(self) -> set[str]:
        """Names of every namespace the caller can see."""

    @abstractmethod
    async def list_workloads(self, namespace: str, cluster: str) -> list[WorkloadDefinition]:
        """List workloads in a namespace with their sidecar and pod posture."""

    @abstractmethod
    async def list_services(self, namespace: str, cluster: str) -> list[ServiceDefinition]:
        """List service definitions in a namespace."""

    async def close(self) -> None:
        """Release any underlying client resources."""
