"""Tests for the RFC 7807 exception hierarchy."""

from __future__ import annotations

import pytest

from meshgraph.exceptions import (
    AccessError,
    InternalError,
    MeshGraphError,
    NamespaceNotFoundError,
    ScopeError,
    UpstreamQueryError,
    error_context,
)


class TestProblemDetail:
    @pytest.mark.parametrize(
        ("error_cls", "status"),
        [
            (ScopeError, 400),
            (AccessError, 403),
            (NamespaceNotFoundError, 404),
            (UpstreamQueryError, 500),
            (InternalError, 500),
        ],
    )
    def test_status_codes(self, error_cls: type[MeshGraphError], status: int) -> None:
        body = error_cls("bad").to_problem_detail()
        assert body["status"] == status
        assert body["detail"] == "bad"

    def test_detail_defaults_to_title(self) -> None:
        error = ScopeError()
        assert error.detail == "Invalid Graph Scope"
        assert str(error) == "Invalid Graph Scope"

    def test_instance_and_extra(self) -> None:
        body = AccessError(
            "denied", instance="/api/namespaces/graph", extra={"namespace": "secret"}
        ).to_problem_detail()
        assert body == {
            "type": "urn:meshgraph:error:access",
            "title": "Namespace Access Denied",
            "status": 403,
            "detail": "denied",
            "instance": "/api/namespaces/graph",
            "namespace": "secret",
        }

    def test_not_found_is_an_access_error(self) -> None:
        assert issubclass(NamespaceNotFoundError, AccessError)


class TestErrorContext:
    def test_wraps_unexpected_errors(self) -> None:
        with pytest.raises(UpstreamQueryError, match="query failed: boom") as info:
            with error_context(UpstreamQueryError, detail="query failed"):
                raise ValueError("boom")
        assert isinstance(info.value.__cause__, ValueError)

    def test_domain_errors_pass_through(self) -> None:
        with pytest.raises(AccessError):
            with error_context(UpstreamQueryError):
                raise AccessError("denied")

    def test_no_error_no_wrap(self) -> None:
        with error_context(UpstreamQueryError):
            value = 1
        assert value == 1
