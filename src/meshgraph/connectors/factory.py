"""Factory for the cluster-state lookup."""

import structlog

from meshgraph.config.settings import Settings
from meshgraph.connectors.base import ClusterStateLookup
from meshgraph.connectors.kubernetes import KubernetesClusterState

logger = structlog.get_logger()


def create_cluster_state(settings: Settings) -> ClusterStateLookup:
    """Create the cluster-state lookup from settings.

    The Kubernetes client itself is initialized lazily on first query.
    """
    state = KubernetesClusterState(
        cluster=settings.default_cluster,
        in_cluster=settings.kube_in_cluster,
        app_label=settings.app_label_name,
        version_label=settings.version_label_name,
        sidecar_annotation=settings.sidecar_annotation,
        sidecar_container=settings.sidecar_container_name,
        gateway_label=settings.gateway_label_name,
        health_annotation_prefix=settings.health_annotation_prefix,
    )
    logger.info(
        "cluster_state_initialized",
        provider=state.provider,
        cluster=settings.default_cluster,
    )
    return state
