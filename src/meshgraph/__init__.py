"""meshgraph: traffic graph construction and annotation for service meshes."""

__version__ = "0.1.0"
