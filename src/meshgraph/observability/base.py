"""Base interface for the metrics store the graph is built from.

Implementations answer time-windowed aggregate queries over mesh telemetry
and raise ``UpstreamQueryError`` when a query fails.
"""

from abc import ABC, abstractmethod

from meshgraph.graph.options import FocalNode
from meshgraph.graph.traffic import SecuritySample, TrafficSample
from meshgraph.models.base import NodeKind, TimeWindow
from meshgraph.models.health import RequestHealth


class MetricsClient(ABC):
    """Abstract interface for mesh traffic and health queries."""

    source_name: str

    @abstractmethod
    async def query_traffic(self, namespace: str, window: TimeWindow) -> list[TrafficSample]:
        """Traffic samples with a source or destination in ``namespace``."""

    @abstractmethod
    async def query_node_traffic(self, node: FocalNode, window: TimeWindow) -> list[TrafficSample]:
        """Traffic samples in which ``node`` is the source or the destination."""

    @abstractmethod
    async def query_security_policy(
        self, namespace: str, window: TimeWindow
    ) -> list[SecuritySample]:
        """Traffic samples into ``namespace`` broken down by security policy."""

    @abstractmethod
    async def query_request_health(
        self,
        namespace: str,
        kind: NodeKind,
        window: TimeWindow,
    ) -> dict[str, RequestHealth]:
        """Batched request health for every app, service or workload in a namespace.

        Returns a dict mapping resource name → request health. Resources
        without traffic in the window are absent.
        """

    async def close(self) -> None:
        """Release any underlying client resources."""
