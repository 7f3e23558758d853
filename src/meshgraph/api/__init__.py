"""HTTP surface for the graph service."""
