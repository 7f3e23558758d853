"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meshgraph.api.routes import graph
from meshgraph.config import settings
from meshgraph.connectors.factory import create_cluster_state
from meshgraph.graph.service import GraphService
from meshgraph.observability.factory import create_metrics_client

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup and shutdown lifecycle."""
    logger.info("meshgraph_starting", environment=settings.environment)

    # ── OpenTelemetry tracing ────────────────────────────────────
    if settings.tracing_enabled:
        try:
            from meshgraph.observability.tracing import init_tracing

            init_tracing(settings)
            logger.info("otel_tracing_started")
        except Exception as e:
            logger.warning("otel_tracing_init_failed", error=str(e))

    # ── Collaborators ────────────────────────────────────────────
    cluster_state = create_cluster_state(settings)
    metrics = create_metrics_client(settings)
    graph.set_service(GraphService(cluster_state, metrics, settings))
    logger.info("graph_service_initialized")

    yield

    logger.info("meshgraph_shutting_down")
    graph.set_service(None)
    await metrics.close()
    await cluster_state.close()

    # Flush OTEL spans
    try:
        from meshgraph.observability.tracing import shutdown_tracing

        shutdown_tracing()
    except Exception as exc:
        logger.debug("otel_shutdown_error", error=str(exc))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="meshgraph",
        description="Service-mesh traffic graph API",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(graph.router, prefix=settings.api_prefix, tags=["Graph"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy", "version": settings.app_version}

    return app


app = create_app()
