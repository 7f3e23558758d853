"""Graph appenders and the fixed order they run in."""

from __future__ import annotations

from meshgraph.exceptions import ScopeError
from meshgraph.graph.appenders.access import AccessAppender
from meshgraph.graph.appenders.base import Appender, AppenderPipeline
from meshgraph.graph.appenders.boxing import BoxingAppender
from meshgraph.graph.appenders.dead_node import DeadNodeAppender
from meshgraph.graph.appenders.health import HealthAppender
from meshgraph.graph.appenders.idle_node import IdleNodeAppender
from meshgraph.graph.appenders.security_policy import SecurityPolicyAppender
from meshgraph.graph.appenders.service_graph import ServiceGraphAppender
from meshgraph.graph.appenders.sidecars_check import SidecarsCheckAppender
from meshgraph.graph.appenders.traffic_generator import TrafficGeneratorAppender
from meshgraph.graph.options import GraphOptions
from meshgraph.models.base import GraphType

REGULAR_APPENDERS: tuple[type[Appender], ...] = (
    AccessAppender,
    IdleNodeAppender,
    SidecarsCheckAppender,
    SecurityPolicyAppender,
    BoxingAppender,
)

FINALIZER_APPENDERS: tuple[type[Appender], ...] = (
    DeadNodeAppender,
    TrafficGeneratorAppender,
    ServiceGraphAppender,
    HealthAppender,
)

APPENDER_NAMES: tuple[str, ...] = tuple(
    cls.name for cls in (*REGULAR_APPENDERS, *FINALIZER_APPENDERS)
)


def _enabled(cls: type[Appender], options: GraphOptions) -> bool:
    if cls is IdleNodeAppender:
        return options.include_idle_nodes and not options.node_mode
    if cls is SecurityPolicyAppender:
        return options.show_security
    if cls is BoxingAppender:
        return bool(options.box_by)
    if cls is ServiceGraphAppender:
        return options.graph_type == GraphType.SERVICE
    return True


def parse_appenders(options: GraphOptions) -> tuple[list[Appender], list[Appender]]:
    """Return ``(regular, finalizers)`` for a request, in their fixed order.

    ``options.appenders`` of ``None`` selects every appender the options
    enable; a list selects a subset by name. The access check always runs.
    """
    requested: set[str] | None = None
    if options.appenders is not None:
        requested = set(options.appenders)
        unknown = sorted(requested - set(APPENDER_NAMES))
        if unknown:
            raise ScopeError(
                f"Unknown appender(s) {unknown}",
                extra={"available": list(APPENDER_NAMES)},
            )

    def selected(cls: type[Appender]) -> bool:
        if cls is not AccessAppender and requested is not None and cls.name not in requested:
            return False
        return _enabled(cls, options)

    regular = [cls() for cls in REGULAR_APPENDERS if selected(cls)]
    finalizers = [cls() for cls in FINALIZER_APPENDERS if selected(cls)]
    return regular, finalizers


__all__ = [
    "APPENDER_NAMES",
    "FINALIZER_APPENDERS",
    "REGULAR_APPENDERS",
    "AccessAppender",
    "Appender",
    "AppenderPipeline",
    "BoxingAppender",
    "DeadNodeAppender",
    "HealthAppender",
    "IdleNodeAppender",
    "SecurityPolicyAppender",
    "ServiceGraphAppender",
    "SidecarsCheckAppender",
    "TrafficGeneratorAppender",
    "parse_appenders",
]
