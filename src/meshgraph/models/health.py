"""Health samples attached to graph nodes for client-side health scoring."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Samples are serialised into the graph document, which is camelCase.
_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestHealth(BaseModel):
    """Request rates by protocol and response code, split by direction.

    ``inbound`` and ``outbound`` map protocol → response code → rate.
    """

    model_config = _CAMEL

    inbound: dict[str, dict[str, float]] = Field(default_factory=dict)
    outbound: dict[str, dict[str, float]] = Field(default_factory=dict)

    def add(self, direction: str, protocol: str, code: str, rate: float) -> None:
        bucket = self.inbound if direction == "inbound" else self.outbound
        codes = bucket.setdefault(protocol, {})
        codes[code] = codes.get(code, 0.0) + rate


class WorkloadStatus(BaseModel):
    model_config = _CAMEL

    name: str
    desired_replicas: int = 0
    available_replicas: int = 0
    pod_count: int = 0


class HealthSample(BaseModel):
    """Health inputs for one node.

    A sample with ``has_data=False`` is the explicit "no data" marker: the
    health query missed this node or failed for its namespace. A sample with
    data but empty request maps means the node saw zero traffic.
    """

    model_config = _CAMEL

    has_data: bool = True
    requests: RequestHealth = Field(default_factory=RequestHealth)
    health_annotations: dict[str, str] = Field(default_factory=dict)
    missing_sidecar: bool = False
    workload_statuses: list[WorkloadStatus] = Field(default_factory=list)

    @classmethod
    def no_data(cls) -> HealthSample:
        return cls(has_data=False)
