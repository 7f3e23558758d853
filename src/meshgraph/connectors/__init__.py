"""Cluster-state lookup abstraction layer."""

from meshgraph.connectors.base import ClusterStateLookup

__all__ = ["ClusterStateLookup"]
