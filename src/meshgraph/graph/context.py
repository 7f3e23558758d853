"""Per-request context shared by the builder and the appenders."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from meshgraph.graph.options import GraphOptions
from meshgraph.models.base import TimeWindow

if TYPE_CHECKING:
    from meshgraph.connectors.base import ClusterStateLookup
    from meshgraph.observability.base import MetricsClient


@dataclass(frozen=True)
class NamespaceContext:
    """One namespace in scope and the window the caller may query it over.

    The window never reaches back past the namespace's creation time.
    """

    name: str
    cluster: str
    duration_seconds: int
    query_time: float
    created_at: float | None = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(duration_seconds=self.duration_seconds, query_time=self.query_time)


def namespace_window(requested_seconds: int, query_time: float, created_at: float | None) -> int:
    """min(requested duration, time since the namespace was created), at least one second."""
    if created_at is None:
        return requested_seconds
    age = int(query_time - created_at)
    return max(1, min(requested_seconds, age))


@dataclass
class AppenderContext:
    """Request-scoped bundle handed to the builder and every appender.

    ``accessible_namespaces`` is filled in by the access appender; every
    other field is fixed once the scope is parsed.
    """

    options: GraphOptions
    namespaces: dict[str, NamespaceContext]
    cluster_state: ClusterStateLookup
    metrics: MetricsClient
    fetch_timeout: float | None = 10.0
    accessible_namespaces: frozenset[str] | None = field(default=None)

    @property
    def query_time(self) -> float:
        return self.options.query_time

    @property
    def duration_seconds(self) -> int:
        return self.options.duration_seconds

    def window(self, namespace: str) -> TimeWindow:
        """The namespace's own window, or the requested window when it is out of scope."""
        scoped = self.namespaces.get(namespace)
        if scoped is not None:
            return scoped.window
        return TimeWindow(duration_seconds=self.duration_seconds, query_time=self.query_time)

    def is_accessible(self, namespace: str) -> bool:
        if self.accessible_namespaces is None:
            return True
        return namespace in self.accessible_namespaces
