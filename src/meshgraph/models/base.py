"""Base data models shared across all meshgraph components."""

from enum import StrEnum

from pydantic import BaseModel, Field


class GraphType(StrEnum):
    """Granularity of the rendered graph."""

    APP = "app"
    VERSIONED_APP = "versionedApp"
    WORKLOAD = "workload"
    SERVICE = "service"


class NodeKind(StrEnum):
    """Kind of mesh participant a node represents."""

    WORKLOAD = "workload"
    APP = "app"
    SERVICE = "service"
    BOX = "box"
    UNKNOWN = "unknown"


class BoxKind(StrEnum):
    """Structural grouping a box node stands for."""

    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    APP = "app"


class NamespaceInfo(BaseModel):
    """A namespace as reported by the cluster-state collaborator."""

    name: str
    cluster: str
    created_at: float | None = None  # epoch seconds


class WorkloadDefinition(BaseModel):
    """A workload (deployment, statefulset, ...) and its mesh posture."""

    name: str
    namespace: str
    cluster: str
    workload_type: str = "Deployment"
    app: str = ""
    version: str = ""
    has_sidecar: bool = True
    is_gateway: bool = False
    pod_count: int = 0
    desired_replicas: int = 0
    available_replicas: int = 0
    health_annotations: dict[str, str] = Field(default_factory=dict)


class ServiceDefinition(BaseModel):
    """A service definition and any health configuration it carries."""

    name: str
    namespace: str
    cluster: str
    app: str = ""
    health_annotations: dict[str, str] = Field(default_factory=dict)


class TimeWindow(BaseModel):
    """Trailing query window ending at ``query_time``."""

    duration_seconds: int
    query_time: float  # epoch seconds

    @property
    def rate_interval(self) -> str:
        return f"{self.duration_seconds}s"
