"""Metrics store clients and tracing."""
