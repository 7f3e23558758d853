"""Structured exception hierarchy following RFC 7807 Problem Details.

All meshgraph domain exceptions extend ``MeshGraphError``. Lower layers
raise them; ``GraphService`` is the single place that turns one into a
response code and a problem-details body.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class MeshGraphError(Exception):
    """Base exception for all meshgraph domain errors."""

    status_code: int = 500
    error_type: str = "about:blank"
    title: str = "Internal Server Error"

    def __init__(
        self,
        detail: str = "",
        *,
        instance: str = "",
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.detail = detail or self.title
        self.instance = instance
        self.extra = extra or {}
        super().__init__(self.detail)

    def to_problem_detail(self) -> dict[str, Any]:
        """RFC 7807 Problem Details JSON object."""
        body: dict[str, Any] = {
            "type": self.error_type,
            "title": self.title,
            "status": self.status_code,
            "detail": self.detail,
        }
        if self.instance:
            body["instance"] = self.instance
        if self.extra:
            body.update(self.extra)
        return body


class ScopeError(MeshGraphError):
    """Malformed or unsupported request scope. Never retried."""

    status_code = 400
    error_type = "urn:meshgraph:error:scope"
    title = "Invalid Graph Scope"


class AccessError(MeshGraphError):
    """The caller cannot see a namespace the request depends on."""

    status_code = 403
    error_type = "urn:meshgraph:error:access"
    title = "Namespace Access Denied"


class NamespaceNotFoundError(AccessError):
    status_code = 404
    error_type = "urn:meshgraph:error:not-found"
    title = "Namespace Not Found"


class UpstreamQueryError(MeshGraphError):
    """A metrics or cluster-state query failed or timed out."""

    status_code = 500
    error_type = "urn:meshgraph:error:upstream"
    title = "Upstream Query Failed"


class InternalError(MeshGraphError):
    """A graph invariant was violated (duplicate identity, dangling edge)."""

    status_code = 500
    error_type = "urn:meshgraph:error:internal"
    title = "Internal Graph Error"


@contextmanager
def error_context(
    error_cls: type[MeshGraphError] = MeshGraphError,
    detail: str = "",
    **kwargs: Any,
) -> Iterator[None]:
    """Context manager that wraps unexpected exceptions into structured errors.

    Usage::

        with error_context(UpstreamQueryError, detail="prometheus query failed"):
            resp = await client.get(...)
    """
    try:
        yield
    except MeshGraphError:
        raise
    except Exception as exc:
        msg = f"{detail}: {exc}" if detail else str(exc)
        raise error_cls(msg, **kwargs) from exc
