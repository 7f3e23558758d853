"""Tests for concurrent fetch fan-out and the per-request context."""

from __future__ import annotations

import asyncio

import pytest

from meshgraph.exceptions import (
    AccessError,
    InternalError,
    NamespaceNotFoundError,
    UpstreamQueryError,
)
from meshgraph.graph.context import namespace_window
from meshgraph.graph.fanout import FetchFailure, bounded, fan_out
from tests.fakes import make_context


def _returns(value):
    async def call():
        return value

    return call


def _raises(exc: Exception):
    async def call():
        raise exc

    return call


def _sleeps(seconds: float, value=None):
    async def call():
        await asyncio.sleep(seconds)
        return value

    return call


class TestBounded:
    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        assert await bounded(_returns(3), 1.0) == 3

    @pytest.mark.asyncio
    async def test_timeout_becomes_upstream_error(self) -> None:
        with pytest.raises(UpstreamQueryError, match="timed out") as info:
            await bounded(_sleeps(1.0), 0.01, branch="traffic:a")
        assert isinstance(info.value.__cause__, TimeoutError)
        assert info.value.extra == {"branch": "traffic:a"}

    @pytest.mark.asyncio
    async def test_no_timeout(self) -> None:
        assert await bounded(_sleeps(0.0, "done"), None) == "done"


class TestFanOut:
    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        assert await fan_out({}, 1.0, mandatory=True, label="x") == {}

    @pytest.mark.asyncio
    async def test_joins_every_branch(self) -> None:
        results = await fan_out(
            {"a": _returns(1), "b": _sleeps(0.01, 2)}, 1.0, mandatory=True, label="x"
        )
        assert results == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_optional_failure_is_isolated(self) -> None:
        results = await fan_out(
            {"a": _returns(1), "b": _raises(UpstreamQueryError("boom"))},
            1.0,
            mandatory=False,
            label="x",
        )
        assert results["a"] == 1
        assert isinstance(results["b"], FetchFailure)
        assert results["b"].branch == "b"
        assert results["b"].timed_out is False

    @pytest.mark.asyncio
    async def test_optional_timeout_is_marked(self) -> None:
        results = await fan_out(
            {"slow": _sleeps(1.0), "fast": _returns("ok")},
            0.01,
            mandatory=False,
            label="x",
        )
        assert results["fast"] == "ok"
        assert results["slow"].timed_out is True

    @pytest.mark.asyncio
    async def test_optional_access_error_falls_back(self) -> None:
        results = await fan_out(
            {"a": _raises(NamespaceNotFoundError("other cluster")), "b": _returns(1)},
            1.0,
            mandatory=False,
            label="x",
        )
        assert isinstance(results["a"], FetchFailure)
        assert results["b"] == 1

    @pytest.mark.asyncio
    async def test_mandatory_access_error_aborts(self) -> None:
        with pytest.raises(AccessError):
            await fan_out(
                {"a": _raises(AccessError("denied")), "b": _returns(1)},
                1.0,
                mandatory=True,
                label="x",
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [InternalError("dangling edge"), KeyError("node"), TypeError("bad")]
    )
    async def test_optional_internal_errors_propagate(self, error: Exception) -> None:
        with pytest.raises(type(error)):
            await fan_out(
                {"a": _raises(error), "b": _returns(1)},
                1.0,
                mandatory=False,
                label="x",
            )

    @pytest.mark.asyncio
    async def test_mandatory_failure_cancels_siblings(self) -> None:
        cancelled = asyncio.Event()

        async def sibling():
            try:
                await asyncio.sleep(5.0)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(UpstreamQueryError):
            await fan_out(
                {"bad": _raises(UpstreamQueryError("down")), "slow": sibling},
                None,
                mandatory=True,
                label="x",
            )
        assert cancelled.is_set()


class TestNamespaceWindow:
    def test_unknown_creation_keeps_request(self) -> None:
        assert namespace_window(600, 10_000.0, None) == 600

    def test_young_namespace_shortens_window(self) -> None:
        assert namespace_window(600, 10_000.0, 9_880.0) == 120

    def test_old_namespace_keeps_request(self) -> None:
        assert namespace_window(600, 10_000.0, 1_000.0) == 600

    def test_never_below_one_second(self) -> None:
        assert namespace_window(600, 10_000.0, 10_500.0) == 1


class TestAppenderContext:
    def test_window_falls_back_to_request(self) -> None:
        context = make_context(namespaces="bookinfo", duration="5m")
        assert context.window("bookinfo").duration_seconds == 300
        outside = context.window("elsewhere")
        assert outside.duration_seconds == 300
        assert outside.query_time == context.query_time

    def test_everything_accessible_until_checked(self) -> None:
        context = make_context(namespaces="bookinfo")
        assert context.is_accessible("anything")
        context.accessible_namespaces = frozenset({"bookinfo"})
        assert context.is_accessible("bookinfo")
        assert not context.is_accessible("anything")
