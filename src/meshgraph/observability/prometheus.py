"""Prometheus metrics client over the Istio standard metrics.

Every query is an instant query against ``/api/v1/query`` evaluated at the
window's query time, aggregating ``rate(...)`` over the window.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from meshgraph.exceptions import UpstreamQueryError, error_context
from meshgraph.graph.options import FocalNode
from meshgraph.graph.traffic import NO_FLAGS, Protocol, SecuritySample, TrafficSample
from meshgraph.models.base import NodeKind, TimeWindow
from meshgraph.models.health import RequestHealth
from meshgraph.observability.base import MetricsClient

logger = structlog.get_logger()

REQUESTS_METRIC = "istio_requests_total"
TCP_METRIC = "istio_tcp_sent_bytes_total"

_SOURCE_LABELS = (
    "source_cluster",
    "source_workload_namespace",
    "source_workload",
    "source_canonical_service",
    "source_canonical_revision",
)
_DEST_LABELS = (
    "destination_cluster",
    "destination_service_namespace",
    "destination_service",
    "destination_service_name",
    "destination_workload_namespace",
    "destination_workload",
    "destination_canonical_service",
    "destination_canonical_revision",
)
_HTTP_GROUP_BY = (
    *_SOURCE_LABELS,
    *_DEST_LABELS,
    "request_protocol",
    "response_code",
    "grpc_response_status",
    "response_flags",
)
_TCP_GROUP_BY = (*_SOURCE_LABELS, *_DEST_LABELS, "response_flags")
_SECURITY_GROUP_BY = (
    *_HTTP_GROUP_BY,
    "connection_security_policy",
    "source_principal",
    "destination_principal",
)

# (namespace label, name label) per direction, per health kind
_HEALTH_LABELS: dict[NodeKind, dict[str, tuple[str, str]]] = {
    NodeKind.APP: {
        "inbound": ("destination_workload_namespace", "destination_canonical_service"),
        "outbound": ("source_workload_namespace", "source_canonical_service"),
    },
    NodeKind.WORKLOAD: {
        "inbound": ("destination_workload_namespace", "destination_workload"),
        "outbound": ("source_workload_namespace", "source_workload"),
    },
    NodeKind.SERVICE: {
        "inbound": ("destination_service_namespace", "destination_service_name"),
    },
}

Matcher = tuple[str, str, str]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _selector(*matchers: Matcher) -> str:
    return "{" + ",".join(f'{label}{op}"{_escape(value)}"' for label, op, value in matchers) + "}"


def _rate_query(
    metric: str,
    matchers: tuple[Matcher, ...],
    window: TimeWindow,
    group_by: tuple[str, ...],
) -> str:
    return (
        f"sum(rate({metric}{_selector(*matchers)}[{window.rate_interval}])) "
        f"by ({','.join(group_by)})"
    )


def _protocol(raw: str) -> Protocol:
    return Protocol.GRPC if raw == "grpc" else Protocol.HTTP


def _response_code(metric: dict[str, str], protocol: Protocol) -> str:
    if protocol == Protocol.GRPC:
        return metric.get("grpc_response_status", "") or "-"
    return metric.get("response_code", "") or "-"


def _sample_fields(metric: dict[str, str], rate: float, tcp: bool) -> dict[str, Any]:
    protocol = Protocol.TCP if tcp else _protocol(metric.get("request_protocol", "http"))
    return {
        "source_cluster": metric.get("source_cluster", ""),
        "source_workload_namespace": metric.get("source_workload_namespace", ""),
        "source_workload": metric.get("source_workload", ""),
        "source_app": metric.get("source_canonical_service", ""),
        "source_version": metric.get("source_canonical_revision", ""),
        "dest_cluster": metric.get("destination_cluster", ""),
        "dest_service_namespace": metric.get("destination_service_namespace", ""),
        "dest_service": metric.get("destination_service_name", ""),
        "dest_workload_namespace": metric.get("destination_workload_namespace", ""),
        "dest_workload": metric.get("destination_workload", ""),
        "dest_app": metric.get("destination_canonical_service", ""),
        "dest_version": metric.get("destination_canonical_revision", ""),
        "protocol": protocol,
        "response_code": "-" if tcp else _response_code(metric, protocol),
        "response_flags": metric.get("response_flags", "") or NO_FLAGS,
        "host": metric.get("destination_service", ""),
        "rate": rate,
    }


def _value(result: dict[str, Any]) -> float:
    return float(result["value"][1])


class PrometheusMetricsClient(MetricsClient):
    """Metrics client backed by the Prometheus HTTP API.

    Parameters
    ----------
    url:
        Prometheus base URL.
    token:
        Optional bearer token.
    verify_ssl:
        Verify the server certificate.
    timeout:
        Per-request HTTP timeout in seconds.
    transport:
        Optional httpx transport (tests inject a mock transport).
    """

    source_name = "prometheus"

    def __init__(
        self,
        url: str,
        token: str = "",
        verify_ssl: bool = True,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _query(self, promql: str, window: TimeWindow) -> list[dict[str, Any]]:
        with error_context(UpstreamQueryError, detail="prometheus query failed"):
            response = await self._client.get(
                "/api/v1/query",
                params={"query": promql, "time": f"{window.query_time:.3f}"},
            )
            response.raise_for_status()
            body = response.json()

        if body.get("status") != "success":
            logger.error("prometheus_query_error", query=promql, error=body.get("error"))
            raise UpstreamQueryError(
                f"Prometheus query error: {body.get('error', 'unknown')}",
                extra={"query": promql},
            )
        data = body.get("data", {})
        if data.get("resultType") != "vector":
            raise UpstreamQueryError(
                f"Unexpected Prometheus result type [{data.get('resultType')}]",
                extra={"query": promql},
            )
        results: list[dict[str, Any]] = data.get("result", [])
        return results

    async def _traffic(
        self,
        matchers: tuple[Matcher, ...],
        window: TimeWindow,
    ) -> list[TrafficSample]:
        samples: list[TrafficSample] = []
        http_query = _rate_query(REQUESTS_METRIC, matchers, window, _HTTP_GROUP_BY)
        for result in await self._query(http_query, window):
            samples.append(TrafficSample(**_sample_fields(result["metric"], _value(result), False)))
        tcp_query = _rate_query(TCP_METRIC, matchers, window, _TCP_GROUP_BY)
        for result in await self._query(tcp_query, window):
            samples.append(TrafficSample(**_sample_fields(result["metric"], _value(result), True)))
        return samples

    async def query_traffic(self, namespace: str, window: TimeWindow) -> list[TrafficSample]:
        # inbound as seen by the destination, outbound to other namespaces as seen by the source
        inbound = await self._traffic(
            (
                ("reporter", "=", "destination"),
                ("destination_service_namespace", "=", namespace),
            ),
            window,
        )
        outbound = await self._traffic(
            (
                ("reporter", "=", "source"),
                ("source_workload_namespace", "=", namespace),
                ("destination_service_namespace", "!=", namespace),
            ),
            window,
        )
        logger.debug(
            "prometheus_traffic_queried",
            namespace=namespace,
            inbound=len(inbound),
            outbound=len(outbound),
        )
        return inbound + outbound

    async def query_node_traffic(self, node: FocalNode, window: TimeWindow) -> list[TrafficSample]:
        samples: list[TrafficSample] = []
        if node.kind == NodeKind.SERVICE:
            return await self._traffic(
                (
                    ("reporter", "=", "destination"),
                    ("destination_service_namespace", "=", node.namespace),
                    ("destination_service_name", "=", node.name),
                ),
                window,
            )

        if node.kind == NodeKind.WORKLOAD:
            source: tuple[Matcher, ...] = (
                ("source_workload_namespace", "=", node.namespace),
                ("source_workload", "=", node.name),
            )
            dest: tuple[Matcher, ...] = (
                ("destination_workload_namespace", "=", node.namespace),
                ("destination_workload", "=", node.name),
            )
        else:
            source = (
                ("source_workload_namespace", "=", node.namespace),
                ("source_canonical_service", "=", node.name),
            )
            dest = (
                ("destination_workload_namespace", "=", node.namespace),
                ("destination_canonical_service", "=", node.name),
            )
            if node.version:
                source += (("source_canonical_revision", "=", node.version),)
                dest += (("destination_canonical_revision", "=", node.version),)

        samples += await self._traffic((("reporter", "=", "source"), *source), window)
        samples += await self._traffic((("reporter", "=", "destination"), *dest), window)
        return samples

    async def query_security_policy(
        self, namespace: str, window: TimeWindow
    ) -> list[SecuritySample]:
        matchers: tuple[Matcher, ...] = (
            ("reporter", "=", "destination"),
            ("destination_service_namespace", "=", namespace),
        )
        results = await self._query(
            _rate_query(REQUESTS_METRIC, matchers, window, _SECURITY_GROUP_BY), window
        )
        samples = []
        for result in results:
            metric = result["metric"]
            samples.append(
                SecuritySample(
                    **_sample_fields(metric, _value(result), False),
                    security_policy=metric.get("connection_security_policy", "none"),
                    source_principal=metric.get("source_principal", ""),
                    dest_principal=metric.get("destination_principal", ""),
                )
            )
        return samples

    async def query_request_health(
        self,
        namespace: str,
        kind: NodeKind,
        window: TimeWindow,
    ) -> dict[str, RequestHealth]:
        directions = _HEALTH_LABELS.get(kind)
        if directions is None:
            return {}

        health: dict[str, RequestHealth] = {}
        for direction, (ns_label, name_label) in directions.items():
            reporter = "destination" if direction == "inbound" else "source"
            matchers: tuple[Matcher, ...] = (
                ("reporter", "=", reporter),
                (ns_label, "=", namespace),
            )
            group_by = (name_label, "request_protocol", "response_code", "grpc_response_status")
            results = await self._query(
                _rate_query(REQUESTS_METRIC, matchers, window, group_by), window
            )
            for result in results:
                metric = result["metric"]
                name = metric.get(name_label, "")
                if not name:
                    continue
                protocol = _protocol(metric.get("request_protocol", "http"))
                health.setdefault(name, RequestHealth()).add(
                    direction, str(protocol), _response_code(metric, protocol), _value(result)
                )
        return health
