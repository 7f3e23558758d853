"""Core data models for meshgraph."""

from meshgraph.models.base import (
    BoxKind,
    GraphType,
    NamespaceInfo,
    NodeKind,
    ServiceDefinition,
    TimeWindow,
    WorkloadDefinition,
)
from meshgraph.models.health import HealthSample, RequestHealth, WorkloadStatus

__all__ = [
    "BoxKind",
    "GraphType",
    "HealthSample",
    "NamespaceInfo",
    "NodeKind",
    "RequestHealth",
    "ServiceDefinition",
    "TimeWindow",
    "WorkloadDefinition",
    "WorkloadStatus",
]
