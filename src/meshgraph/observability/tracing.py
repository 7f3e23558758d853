"""OpenTelemetry tracing for graph requests.

``init_tracing`` installs the SDK provider at startup. The graph pipeline
opens its spans through ``request_span``, ``stage_span`` and
``appender_span``; before ``init_tracing`` runs (tests, the CLI) those spans
come from the no-op default provider.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

if TYPE_CHECKING:
    from meshgraph.config.settings import Settings

logger = structlog.get_logger()

TRACER_NAME = "meshgraph.graph"

_provider: TracerProvider | None = None


def init_tracing(settings: Settings) -> trace.Tracer:
    """Register a TracerProvider for the graph service.

    Spans carry the service identity and the cluster this instance serves.
    An OTLP gRPC exporter is attached only when an endpoint is configured.
    """
    global _provider  # noqa: PLW0603

    resource = Resource.create(
        {
            "service.name": settings.app_name,
            "service.version": settings.app_version,
            "deployment.environment": settings.environment,
            "meshgraph.cluster": settings.default_cluster,
        }
    )
    _provider = TracerProvider(resource=resource)

    endpoint = settings.otel_exporter_endpoint
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
            _provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("otel_exporter_configured", endpoint=endpoint)
        except Exception as exc:
            logger.warning("otel_exporter_init_failed", error=str(exc))

    trace.set_tracer_provider(_provider)
    logger.info(
        "otel_tracing_initialized",
        service=settings.app_name,
        cluster=settings.default_cluster,
    )
    return _provider.get_tracer(TRACER_NAME)


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def request_span() -> Iterator[trace.Span]:
    """Root span of one graph request. The caller sets ``http.status_code``."""
    with get_tracer().start_as_current_span("graph.request") as span:
        yield span


@contextmanager
def stage_span(name: str, timings: dict[str, float]) -> Iterator[None]:
    """Span ``graph.<name>``; its wall time lands in ``timings[name]`` in ms.

    The timing is recorded even when the stage raises.
    """
    start = time.perf_counter()
    with get_tracer().start_as_current_span(f"graph.{name}"):
        try:
            yield
        finally:
            timings[name] = round((time.perf_counter() - start) * 1000, 3)
            logger.debug("graph_stage_finished", stage=name, duration_ms=timings[name])


@contextmanager
def appender_span(name: str, finalizer: bool, nodes: int) -> Iterator[trace.Span]:
    with get_tracer().start_as_current_span(f"appender.{name}") as span:
        span.set_attribute("appender.finalizer", finalizer)
        span.set_attribute("graph.nodes", nodes)
        yield span


def shutdown_tracing() -> None:
    """Flush pending spans and shut down the provider."""
    global _provider  # noqa: PLW0603
    if _provider is not None:
        _provider.force_flush()
        _provider.shutdown()
        logger.info("otel_tracing_shutdown")
        _provider = None
