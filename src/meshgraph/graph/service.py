"""Request orchestrator: ParseScope → Build → Annotate → Project → Respond.

``GraphService`` is the only place an error becomes a response code. Every
failure short-circuits to an RFC 7807 body; a partial document is never
returned.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from meshgraph.config.settings import Settings
from meshgraph.connectors.base import ClusterStateLookup
from meshgraph.exceptions import InternalError, MeshGraphError, UpstreamQueryError
from meshgraph.graph.appenders import AppenderPipeline, parse_appenders
from meshgraph.graph.builder import TrafficMapBuilder
from meshgraph.graph.context import AppenderContext, NamespaceContext, namespace_window
from meshgraph.graph.fanout import fan_out
from meshgraph.graph.options import GraphOptions, GraphQuery, parse_options
from meshgraph.graph.projection import GraphDocument, document_stats, project
from meshgraph.observability.base import MetricsClient
from meshgraph.observability.tracing import request_span, stage_span

logger = structlog.get_logger()

STAGES = ("parse_scope", "build", "annotate", "project", "respond")


@dataclass
class GraphResponse:
    """Outcome of one graph request: status, JSON body and stage timings (ms)."""

    status_code: int
    body: dict[str, Any]
    timings: dict[str, float] = field(default_factory=dict)
    document: GraphDocument | None = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200


class GraphService:
    """Drives one graph request end to end.

    Parameters
    ----------
    cluster_state:
        Read-only cluster-state lookup, shared across requests.
    metrics:
        Metrics store client, shared across requests.
    settings:
        Defaults and timeouts.
    clock:
        Source of "now" in epoch seconds.
    """

    def __init__(
        self,
        cluster_state: ClusterStateLookup,
        metrics: MetricsClient,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cluster_state = cluster_state
        self._metrics = metrics
        self._settings = settings
        self._clock = clock

    async def respond(self, query: GraphQuery) -> GraphResponse:
        timings: dict[str, float] = {}
        with request_span() as span:
            try:
                async with asyncio.timeout(self._settings.request_timeout_seconds):
                    document = await self._run(query, timings)
            except TimeoutError:
                error: MeshGraphError = UpstreamQueryError(
                    f"Graph request timed out after {self._settings.request_timeout_seconds}s"
                )
                return self._error_response(error, timings, span)
            except MeshGraphError as exc:
                return self._error_response(exc, timings, span)
            except Exception as exc:
                logger.exception("graph_request_unexpected_error", error=str(exc))
                return self._error_response(InternalError(str(exc)), timings, span)

            with stage_span("respond", timings):
                body = document.model_dump(mode="json", by_alias=True, exclude_none=True)
            span.set_attribute("http.status_code", 200)
            logger.info("graph_generated", **document_stats(document), timings=timings)
            return GraphResponse(status_code=200, body=body, timings=timings, document=document)

    async def _run(self, query: GraphQuery, timings: dict[str, float]) -> GraphDocument:
        with stage_span("parse_scope", timings):
            options = parse_options(query, self._settings, now=self._clock())
            regular, finalizers = parse_appenders(options)
            context = await self._resolve_scope(options)

        with stage_span("build", timings):
            builder = TrafficMapBuilder(
                self._metrics,
                options,
                query_timeout=self._settings.metrics_query_timeout_seconds,
            )
            traffic_map = await builder.build(context)

        with stage_span("annotate", timings):
            pipeline = AppenderPipeline(
                regular,
                finalizers,
                fetch_timeout=self._settings.metrics_query_timeout_seconds,
            )
            await pipeline.run(traffic_map, context)
            traffic_map.validate()

        with stage_span("project", timings):
            return project(traffic_map, options, self._clock())

    async def _resolve_scope(self, options: GraphOptions) -> AppenderContext:
        """Look up every requested namespace (access-checked) and its window."""
        calls = {
            name: partial(self._cluster_state.get_namespace, name, options.cluster)
            for name in options.namespaces
        }
        infos = await fan_out(
            calls,
            self._settings.cluster_state_timeout_seconds,
            mandatory=True,
            label="namespace",
        )
        namespaces = {
            name: NamespaceContext(
                name=name,
                cluster=info.cluster or options.cluster,
                duration_seconds=namespace_window(
                    options.duration_seconds, options.query_time, info.created_at
                ),
                query_time=options.query_time,
                created_at=info.created_at,
            )
            for name, info in infos.items()
        }
        return AppenderContext(
            options=options,
            namespaces=namespaces,
            cluster_state=self._cluster_state,
            metrics=self._metrics,
            fetch_timeout=self._settings.metrics_query_timeout_seconds,
        )

    def _error_response(
        self,
        error: MeshGraphError,
        timings: dict[str, float],
        span: Any,
    ) -> GraphResponse:
        if error.status_code >= 500:
            logger.error(
                "graph_request_failed",
                status=error.status_code,
                error_type=error.error_type,
                detail=error.detail,
                timings=timings,
            )
        else:
            logger.warning(
                "graph_request_rejected",
                status=error.status_code,
                error_type=error.error_type,
                detail=error.detail,
            )
        span.set_attribute("http.status_code", error.status_code)
        return GraphResponse(
            status_code=error.status_code,
            body=error.to_problem_detail(),
            timings=timings,
        )
