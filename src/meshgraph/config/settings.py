"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """meshgraph configuration loaded from environment variables."""

    # Application
    app_name: str = "meshgraph"
    app_version: str = "0.1.0"
    environment: str = "development"  # development, staging, production

    # API
    api_host: str = "0.0.0.0"  # noqa: S104  # nosec B104
    api_port: int = 8000
    api_prefix: str = "/api"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Metrics store (Prometheus HTTP API)
    prometheus_url: str = "http://localhost:9090"
    prometheus_token: str = ""
    prometheus_verify_ssl: bool = True

    # Cluster state
    default_cluster: str = "Kubernetes"
    kube_in_cluster: bool = False
    app_label_name: str = "app"
    version_label_name: str = "version"
    sidecar_annotation: str = "sidecar.istio.io/status"
    sidecar_container_name: str = "istio-proxy"
    gateway_label_name: str = "istio"
    health_annotation_prefix: str = "health.meshgraph.io/"

    # Graph defaults
    default_graph_type: str = "versionedApp"
    default_duration_seconds: int = 600
    inject_service_nodes: bool = True

    # Timeouts (seconds)
    metrics_query_timeout_seconds: float = 10.0
    cluster_state_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 30.0

    # Observability
    otel_exporter_endpoint: str = ""
    tracing_enabled: bool = False

    model_config = {
        "env_prefix": "MESHGRAPH_",
        "env_file": ".env",
        "extra": "ignore",
    }


settings = Settings()
