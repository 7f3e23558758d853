"""Factory for the metrics client."""

import structlog

from meshgraph.config.settings import Settings
from meshgraph.observability.base import MetricsClient
from meshgraph.observability.prometheus import PrometheusMetricsClient

logger = structlog.get_logger()


def create_metrics_client(settings: Settings) -> MetricsClient:
    """Create the Prometheus metrics client from settings."""
    client = PrometheusMetricsClient(
        url=settings.prometheus_url,
        token=settings.prometheus_token,
        verify_ssl=settings.prometheus_verify_ssl,
        timeout=settings.metrics_query_timeout_seconds,
    )
    logger.info(
        "metrics_client_initialized",
        source=client.source_name,
        url=settings.prometheus_url,
    )
    return client
