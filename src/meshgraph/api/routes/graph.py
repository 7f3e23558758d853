"""Graph endpoints.

Each route maps its path and query parameters onto a ``GraphQuery`` and
hands it to the ``GraphService``; status code and body come back from the
service unchanged.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from meshgraph.graph.options import GraphQuery
from meshgraph.graph.service import GraphService
from meshgraph.models.base import NodeKind

logger = structlog.get_logger()

router = APIRouter()
_service: GraphService | None = None


def set_service(service: GraphService | None) -> None:
    """Inject the GraphService instance at startup."""
    global _service  # noqa: PLW0603
    _service = service


class GraphParams:
    """Query parameters shared by every graph route."""

    def __init__(
        self,
        cluster: str = Query(default=""),
        graph_type: str = Query(default="", alias="graphType"),
        duration: str = Query(default=""),
        query_time: str = Query(default="", alias="queryTime"),
        inject_service_nodes: str = Query(default="", alias="injectServiceNodes"),
        box_by: str = Query(default="", alias="boxBy"),
        include_idle_nodes: str = Query(default="", alias="includeIdleNodes"),
        show_security: str = Query(default="", alias="showSecurity"),
        appenders: str | None = Query(default=None),
    ) -> None:
        self.fields: dict[str, Any] = {
            "cluster": cluster,
            "graph_type": graph_type,
            "duration": duration,
            "query_time": query_time,
            "inject_service_nodes": inject_service_nodes,
            "box_by": box_by,
            "include_idle_nodes": include_idle_nodes,
            "show_security": show_security,
            "appenders": appenders,
        }


async def _respond(query: GraphQuery) -> JSONResponse:
    if _service is None:
        logger.warning("graph_service_not_initialized")
        return JSONResponse(
            status_code=503,
            content={
                "type": "urn:meshgraph:error:unavailable",
                "title": "Service Unavailable",
                "status": 503,
                "detail": "Graph service not initialized",
            },
        )
    response = await _service.respond(query)
    return JSONResponse(status_code=response.status_code, content=response.body)


def _node_query(
    params: GraphParams,
    namespace: str,
    kind: NodeKind,
    name: str,
    version: str = "",
) -> GraphQuery:
    return GraphQuery(
        namespaces=namespace,
        node_namespace=namespace,
        node_kind=str(kind),
        node_name=name,
        node_version=version,
        **params.fields,
    )


@router.get("/namespaces/graph")
async def namespaces_graph(
    namespaces: str = Query(default=""),
    params: GraphParams = Depends(),  # noqa: B008
) -> JSONResponse:
    """Graph of every requested namespace (comma-separated)."""
    return await _respond(GraphQuery(namespaces=namespaces, **params.fields))


@router.get("/namespaces/{namespace}/workloads/{workload}/graph")
async def workload_graph(
    namespace: str,
    workload: str,
    params: GraphParams = Depends(),  # noqa: B008
) -> JSONResponse:
    """Graph centered on a workload."""
    return await _respond(_node_query(params, namespace, NodeKind.WORKLOAD, workload))


@router.get("/namespaces/{namespace}/applications/{app}/graph")
async def app_graph(
    namespace: str,
    app: str,
    params: GraphParams = Depends(),  # noqa: B008
) -> JSONResponse:
    """Graph centered on an app, all versions."""
    return await _respond(_node_query(params, namespace, NodeKind.APP, app))


@router.get("/namespaces/{namespace}/applications/{app}/versions/{version}/graph")
async def app_version_graph(
    namespace: str,
    app: str,
    version: str,
    params: GraphParams = Depends(),  # noqa: B008
) -> JSONResponse:
    return await _respond(_node_query(params, namespace, NodeKind.APP, app, version))


@router.get("/namespaces/{namespace}/services/{service}/graph")
async def service_graph(
    namespace: str,
    service: str,
    params: GraphParams = Depends(),  # noqa: B008
) -> JSONResponse:
    """Graph centered on a service."""
    return await _respond(_node_query(params, namespace, NodeKind.SERVICE, service))
