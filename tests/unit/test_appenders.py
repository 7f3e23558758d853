"""Tests for the individual graph appenders."""

from __future__ import annotations

import asyncio

import pytest

from meshgraph.exceptions import AccessError, InternalError, UpstreamQueryError
from meshgraph.graph.appenders import (
    AccessAppender,
    Appender,
    AppenderPipeline,
    BoxingAppender,
    DeadNodeAppender,
    IdleNodeAppender,
    SecurityPolicyAppender,
    ServiceGraphAppender,
    SidecarsCheckAppender,
    TrafficGeneratorAppender,
)
from meshgraph.graph.builder import TrafficMapBuilder
from meshgraph.graph.model import MetadataKey, NodeIdentity, TrafficMap
from meshgraph.graph.traffic import SecuritySample
from meshgraph.models.base import NodeKind
from tests.fakes import (
    FakeClusterState,
    FakeMetricsClient,
    http_sample,
    make_context,
    service,
    workload,
)


async def _run(appender: Appender, traffic_map: TrafficMap, context) -> None:
    regular, finalizers = ([], [appender]) if appender.finalizer else ([appender], [])
    await AppenderPipeline(regular, finalizers, fetch_timeout=context.fetch_timeout).run(
        traffic_map, context
    )


def _bookinfo_samples() -> list:
    return [
        http_sample(
            ("bookinfo", "productpage-v1", "productpage", "v1"),
            ("bookinfo", "reviews", "reviews-v1", "reviews", "v1"),
            rate=1.0,
        ),
        http_sample(
            ("bookinfo", "productpage-v1", "productpage", "v1"),
            ("bookinfo", "reviews", "reviews-v2", "reviews", "v2"),
            rate=1.0,
        ),
    ]


def _populate(context, samples=None) -> TrafficMap:
    builder = TrafficMapBuilder(context.metrics, context.options)
    return builder.populate(samples if samples is not None else _bookinfo_samples())


def _app_key(app: str, workload_name: str, namespace: str = "bookinfo") -> str:
    return NodeIdentity("east", namespace, NodeKind.APP, app=app, workload=workload_name).key


def _service_key(name: str, namespace: str = "bookinfo") -> str:
    return NodeIdentity("east", namespace, NodeKind.SERVICE, service=name).key


def _workload_key(name: str, namespace: str = "bookinfo") -> str:
    return NodeIdentity("east", namespace, NodeKind.WORKLOAD, workload=name).key


# ── access ───────────────────────────────────────────────────────────


class TestAccessAppender:
    @pytest.mark.asyncio
    async def test_flags_nodes_in_hidden_namespaces(self) -> None:
        cross = http_sample(("bookinfo", "a1", "", ""), ("secret", "s", "s1", "", ""), rate=1.0)
        state = FakeClusterState(namespaces={"bookinfo": None}, accessible={"bookinfo"})
        context = make_context(cluster_state=state, namespaces="bookinfo", graph_type="workload")
        traffic_map = _populate(context, [cross])

        await _run(AccessAppender(), traffic_map, context)

        assert context.accessible_namespaces == frozenset({"bookinfo"})
        assert not traffic_map[_workload_key("a1")].flag(MetadataKey.IS_INACCESSIBLE)
        assert traffic_map[_service_key("s", "secret")].flag(MetadataKey.IS_INACCESSIBLE)
        assert traffic_map[_workload_key("s1", "secret")].flag(MetadataKey.IS_INACCESSIBLE)

    @pytest.mark.asyncio
    async def test_lookup_failure_aborts(self) -> None:
        state = FakeClusterState(
            failures={("get_accessible_namespaces", "*"): AccessError("token rejected")}
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")

        with pytest.raises(AccessError, match="token rejected"):
            await _run(AccessAppender(), _populate(context), context)

    @pytest.mark.asyncio
    async def test_slow_lookup_times_out(self) -> None:
        state = FakeClusterState(delays={("get_accessible_namespaces", "*"): 1.0})
        context = make_context(cluster_state=state, namespaces="bookinfo", fetch_timeout=0.01)

        with pytest.raises(UpstreamQueryError, match="timed out"):
            await _run(AccessAppender(), _populate(context), context)


# ── idleNode ─────────────────────────────────────────────────────────


class TestIdleNodeAppender:
    def _state(self, **kwargs) -> FakeClusterState:
        return FakeClusterState(
            namespaces={"bookinfo": None},
            workloads={
                "bookinfo": [
                    workload("productpage-v1", "bookinfo", "productpage", "v1"),
                    workload("reviews-v1", "bookinfo", "reviews", "v1"),
                    workload("reviews-v2", "bookinfo", "reviews", "v2"),
                    workload("reviews-v3", "bookinfo", "reviews", "v3"),
                ]
            },
            services={
                "bookinfo": [
                    service("productpage", "bookinfo"),
                    service("reviews", "bookinfo"),
                    service("details", "bookinfo"),
                ]
            },
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_adds_defined_nodes_without_traffic(self) -> None:
        context = make_context(
            cluster_state=self._state(), namespaces="bookinfo", include_idle_nodes="true"
        )
        traffic_map = _populate(context)
        before = set(traffic_map.keys())

        await _run(IdleNodeAppender(), traffic_map, context)

        added = set(traffic_map.keys()) - before
        assert added == {
            _app_key("reviews", "reviews-v3"),
            _service_key("productpage"),
            _service_key("details"),
        }
        for key in added:
            assert traffic_map[key].flag(MetadataKey.IS_IDLE)
        assert not traffic_map[_service_key("reviews")].flag(MetadataKey.IS_IDLE)

    @pytest.mark.asyncio
    async def test_no_idle_services_without_injection(self) -> None:
        context = make_context(
            cluster_state=self._state(),
            namespaces="bookinfo",
            include_idle_nodes="true",
            inject_service_nodes="false",
        )
        traffic_map = _populate(context)

        await _run(IdleNodeAppender(), traffic_map, context)

        assert not any(node.kind == NodeKind.SERVICE for node in traffic_map)
        assert _app_key("reviews", "reviews-v3") in traffic_map

    @pytest.mark.asyncio
    async def test_lookup_failure_leaves_map_unchanged(self) -> None:
        state = self._state(
            failures={("list_services", "bookinfo"): UpstreamQueryError("api down")}
        )
        context = make_context(
            cluster_state=state, namespaces="bookinfo", include_idle_nodes="true"
        )
        traffic_map = _populate(context)
        before = sorted(traffic_map.keys())

        await _run(IdleNodeAppender(), traffic_map, context)

        assert sorted(traffic_map.keys()) == before

    @pytest.mark.asyncio
    async def test_failed_lookup_cancels_sibling_lookup(self) -> None:
        cancelled = asyncio.Event()

        class StalledWorkloads(FakeClusterState):
            async def list_workloads(self, namespace, cluster):
                try:
                    await asyncio.sleep(5.0)
                except asyncio.CancelledError:
                    cancelled.set()
                    raise
                return []

        state = StalledWorkloads(
            failures={("list_services", "bookinfo"): UpstreamQueryError("api down")}
        )
        context = make_context(
            cluster_state=state, namespaces="bookinfo", include_idle_nodes="true"
        )

        with pytest.raises(UpstreamQueryError, match="api down"):
            await IdleNodeAppender().fetch(TrafficMap(), context, context.namespaces["bookinfo"])
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_fetch_without_namespace_is_internal_error(self) -> None:
        context = make_context(namespaces="bookinfo", include_idle_nodes="true")
        with pytest.raises(InternalError, match="idleNode"):
            await IdleNodeAppender().fetch(TrafficMap(), context, None)


# ── sidecarsCheck ────────────────────────────────────────────────────


class TestSidecarsCheckAppender:
    @pytest.mark.asyncio
    async def test_flags_workloads_missing_sidecar(self) -> None:
        state = FakeClusterState(
            workloads={
                "bookinfo": [
                    workload("productpage-v1", "bookinfo", "productpage", "v1"),
                    workload("reviews-v1", "bookinfo", "reviews", "v1", has_sidecar=False),
                    workload("reviews-v2", "bookinfo", "reviews", "v2"),
                ]
            }
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")
        traffic_map = _populate(context)

        await _run(SidecarsCheckAppender(), traffic_map, context)

        flagged = sorted(n.id for n in traffic_map if n.flag(MetadataKey.HAS_MISSING_SIDECAR))
        assert flagged == [_app_key("reviews", "reviews-v1")]

    @pytest.mark.asyncio
    async def test_app_node_flagged_when_any_version_lacks_sidecar(self) -> None:
        state = FakeClusterState(
            workloads={
                "bookinfo": [
                    workload("productpage-v1", "bookinfo", "productpage", "v1"),
                    workload("reviews-v1", "bookinfo", "reviews", "v1"),
                    workload("reviews-v2", "bookinfo", "reviews", "v2", has_sidecar=False),
                ]
            }
        )
        context = make_context(cluster_state=state, namespaces="bookinfo", graph_type="app")
        traffic_map = _populate(context)

        await _run(SidecarsCheckAppender(), traffic_map, context)

        reviews = NodeIdentity("east", "bookinfo", NodeKind.APP, app="reviews").key
        assert traffic_map[reviews].flag(MetadataKey.HAS_MISSING_SIDECAR)

    @pytest.mark.asyncio
    async def test_gateways_and_inaccessible_nodes_are_skipped(self) -> None:
        state = FakeClusterState(
            workloads={
                "bookinfo": [
                    workload(
                        "productpage-v1",
                        "bookinfo",
                        "productpage",
                        "v1",
                        has_sidecar=False,
                        is_gateway=True,
                    ),
                    workload("reviews-v1", "bookinfo", "reviews", "v1", has_sidecar=False),
                    workload("reviews-v2", "bookinfo", "reviews", "v2"),
                ]
            }
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")
        traffic_map = _populate(context)
        traffic_map[_app_key("reviews", "reviews-v1")].metadata[
            MetadataKey.IS_INACCESSIBLE
        ] = True

        await _run(SidecarsCheckAppender(), traffic_map, context)

        assert not any(n.flag(MetadataKey.HAS_MISSING_SIDECAR) for n in traffic_map)

    @pytest.mark.asyncio
    async def test_lookup_failure_flags_nothing(self) -> None:
        state = FakeClusterState(
            failures={("list_workloads", "bookinfo"): UpstreamQueryError("api down")}
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")
        traffic_map = _populate(context)

        await _run(SidecarsCheckAppender(), traffic_map, context)

        assert not any(n.flag(MetadataKey.HAS_MISSING_SIDECAR) for n in traffic_map)


# ── securityPolicy ───────────────────────────────────────────────────


def _secure(sample, policy: str, rate: float, **principals: str) -> SecuritySample:
    fields = sample.model_dump()
    fields["rate"] = rate
    return SecuritySample(**fields, security_policy=policy, **principals)


class TestSecurityPolicyAppender:
    @pytest.mark.asyncio
    async def test_marks_mtls_share_on_both_hops(self) -> None:
        samples = _bookinfo_samples()
        metrics = FakeMetricsClient(
            security={
                "bookinfo": [
                    _secure(
                        samples[0],
                        "mutual_tls",
                        1.5,
                        source_principal="spiffe://cluster.local/ns/bookinfo/sa/productpage",
                        dest_principal="spiffe://cluster.local/ns/bookinfo/sa/reviews",
                    ),
                    _secure(samples[0], "none", 0.5),
                ]
            }
        )
        context = make_context(metrics=metrics, namespaces="bookinfo", show_security="true")
        traffic_map = _populate(context)

        await _run(SecurityPolicyAppender(), traffic_map, context)

        productpage = traffic_map[_app_key("productpage", "productpage-v1")]
        reviews_service = traffic_map[_service_key("reviews")]
        to_service = productpage.find_edge(reviews_service.id, samples[0].protocol)
        to_v1 = reviews_service.find_edge(_app_key("reviews", "reviews-v1"), samples[0].protocol)
        to_v2 = reviews_service.find_edge(_app_key("reviews", "reviews-v2"), samples[0].protocol)

        assert to_service.metadata[MetadataKey.IS_MTLS] == pytest.approx(75.0)
        assert to_v1.metadata[MetadataKey.IS_MTLS] == pytest.approx(75.0)
        assert to_service.metadata[MetadataKey.SOURCE_PRINCIPALS] == [
            "spiffe://cluster.local/ns/bookinfo/sa/productpage"
        ]
        assert MetadataKey.IS_MTLS not in to_v2.metadata

    @pytest.mark.asyncio
    async def test_plaintext_edges_are_not_marked(self) -> None:
        samples = _bookinfo_samples()
        metrics = FakeMetricsClient(security={"bookinfo": [_secure(samples[0], "none", 1.0)]})
        context = make_context(metrics=metrics, namespaces="bookinfo", show_security="true")
        traffic_map = _populate(context)

        await _run(SecurityPolicyAppender(), traffic_map, context)

        assert not any(MetadataKey.IS_MTLS in e.metadata for e in traffic_map.edges())

    @pytest.mark.asyncio
    async def test_query_failure_is_tolerated(self) -> None:
        metrics = FakeMetricsClient(
            failures={("query_security_policy", "bookinfo"): UpstreamQueryError("down")}
        )
        context = make_context(metrics=metrics, namespaces="bookinfo", show_security="true")
        traffic_map = _populate(context)

        await _run(SecurityPolicyAppender(), traffic_map, context)

        assert not any(e.metadata for e in traffic_map.edges())


# ── boxing ───────────────────────────────────────────────────────────


class TestBoxingAppender:
    @pytest.mark.asyncio
    async def test_app_and_namespace_boxes(self) -> None:
        context = make_context(namespaces="bookinfo", box_by="app,namespace")
        traffic_map = _populate(context)

        await _run(BoxingAppender(), traffic_map, context)

        app_box = NodeIdentity("east", "bookinfo", NodeKind.BOX, app="reviews").key
        ns_box = NodeIdentity("east", "bookinfo", NodeKind.BOX).key
        assert traffic_map[app_box].metadata[MetadataKey.IS_BOX] == "app"
        assert traffic_map[ns_box].metadata[MetadataKey.IS_BOX] == "namespace"
        assert traffic_map[_app_key("reviews", "reviews-v1")].parent == app_box
        assert traffic_map[_app_key("reviews", "reviews-v2")].parent == app_box
        assert traffic_map[app_box].parent == ns_box
        # a single-version app gets no app box
        assert traffic_map[_app_key("productpage", "productpage-v1")].parent == ns_box
        assert traffic_map[_service_key("reviews")].parent == ns_box
        assert traffic_map[ns_box].parent is None

    @pytest.mark.asyncio
    async def test_cluster_boxes_need_more_than_one_cluster(self) -> None:
        context = make_context(namespaces="bookinfo", box_by="cluster")
        traffic_map = _populate(context)

        await _run(BoxingAppender(), traffic_map, context)

        assert not any(node.kind == NodeKind.BOX for node in traffic_map)

    @pytest.mark.asyncio
    async def test_cluster_boxes_wrap_namespace_boxes(self) -> None:
        context = make_context(
            namespaces="bookinfo", graph_type="workload", box_by="cluster,namespace"
        )
        traffic_map = TrafficMap()
        east, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.WORKLOAD, workload="a")
        )
        west, _ = traffic_map.get_or_add(
            NodeIdentity("west", "bookinfo", NodeKind.WORKLOAD, workload="b")
        )

        await _run(BoxingAppender(), traffic_map, context)

        east_ns = NodeIdentity("east", "bookinfo", NodeKind.BOX).key
        west_ns = NodeIdentity("west", "bookinfo", NodeKind.BOX).key
        assert east.parent == east_ns
        assert west.parent == west_ns
        assert traffic_map[east_ns].parent == NodeIdentity("east", "", NodeKind.BOX).key
        assert traffic_map[west_ns].parent == NodeIdentity("west", "", NodeKind.BOX).key
        assert traffic_map[east_ns].metadata[MetadataKey.IS_BOX] == "namespace"
        assert traffic_map[traffic_map[west_ns].parent].metadata[MetadataKey.IS_BOX] == "cluster"


# ── deadNode ─────────────────────────────────────────────────────────


class TestDeadNodeAppender:
    @pytest.mark.asyncio
    async def test_prunes_nodes_without_traffic_or_pods(self) -> None:
        state = FakeClusterState(
            workloads={
                "bookinfo": [
                    workload("productpage-v1", "bookinfo", "productpage", "v1"),
                    workload("reviews-v1", "bookinfo", "reviews", "v1"),
                    workload("reviews-v2", "bookinfo", "reviews", "v2"),
                    workload("scaled-down", "bookinfo", pods=0),
                    workload("idle-v1", "bookinfo", "idle", "v1", pods=0),
                ]
            }
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")
        traffic_map = _populate(context)
        scaled, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.WORKLOAD, workload="scaled-down")
        )
        deleted, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.WORKLOAD, workload="deleted")
        )
        orphan, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.SERVICE, service="orphan")
        )
        idle, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.APP, app="idle", workload="idle-v1")
        )
        idle.metadata[MetadataKey.IS_IDLE] = True
        traffic_nodes = set(traffic_map.keys()) - {scaled.id, deleted.id, orphan.id}

        await _run(DeadNodeAppender(), traffic_map, context)

        assert set(traffic_map.keys()) == traffic_nodes
        assert idle.id in traffic_map

    @pytest.mark.asyncio
    async def test_failed_lookup_keeps_namespace(self) -> None:
        state = FakeClusterState(
            failures={("list_workloads", "bookinfo"): UpstreamQueryError("api down")}
        )
        context = make_context(cluster_state=state, namespaces="bookinfo")
        traffic_map = _populate(context)
        ghost, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.WORKLOAD, workload="ghost")
        )

        await _run(DeadNodeAppender(), traffic_map, context)

        assert ghost.id in traffic_map

    @pytest.mark.asyncio
    async def test_removes_boxes_left_empty(self) -> None:
        context = make_context(namespaces="bookinfo", graph_type="workload")
        traffic_map = TrafficMap()
        box, _ = traffic_map.get_or_add(NodeIdentity("east", "gone", NodeKind.BOX))
        box.metadata[MetadataKey.IS_BOX] = "namespace"
        dead, _ = traffic_map.get_or_add(
            NodeIdentity("east", "bookinfo", NodeKind.SERVICE, service="dead")
        )
        dead.parent = box.id

        await _run(DeadNodeAppender(), traffic_map, context)

        assert len(traffic_map) == 0


# ── trafficGenerator / serviceGraph ──────────────────────────────────


class TestTrafficGeneratorAppender:
    @pytest.mark.asyncio
    async def test_marks_senders_with_no_inbound_traffic(self) -> None:
        context = make_context(namespaces="bookinfo")
        traffic_map = _populate(context)

        await _run(TrafficGeneratorAppender(), traffic_map, context)

        roots = [n.id for n in traffic_map if n.flag(MetadataKey.IS_ROOT)]
        assert roots == [_app_key("productpage", "productpage-v1")]


class TestServiceGraphAppender:
    @pytest.mark.asyncio
    async def test_only_runs_for_service_graphs(self) -> None:
        context = make_context(namespaces="bookinfo", graph_type="workload")
        traffic_map = _populate(context)
        before = len(traffic_map)

        await _run(ServiceGraphAppender(), traffic_map, context)

        assert len(traffic_map) == before

    @pytest.mark.asyncio
    async def test_reduces_to_services(self) -> None:
        context = make_context(namespaces="bookinfo", graph_type="service")
        traffic_map = _populate(context)
        await _run(TrafficGeneratorAppender(), traffic_map, context)

        await _run(ServiceGraphAppender(), traffic_map, context)

        kinds = sorted(str(n.kind) for n in traffic_map)
        assert kinds == ["service", "workload"]
        assert traffic_map[_workload_key("productpage-v1")].flag(MetadataKey.IS_ROOT)
