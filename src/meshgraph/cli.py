"""meshgraph CLI entry point."""

import click
import uvicorn

from meshgraph.config import settings


@click.group()  # type: ignore[untyped-decorator]
@click.version_option(version=settings.app_version)  # type: ignore[untyped-decorator]
def main() -> None:
    """meshgraph - service-mesh traffic graph generator."""


@main.command()  # type: ignore[untyped-decorator]
@click.option("--host", default=settings.api_host, help="API host")  # type: ignore[untyped-decorator]
@click.option("--port", default=settings.api_port, type=int, help="API port")  # type: ignore[untyped-decorator]
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")  # type: ignore[untyped-decorator]
def serve(host: str, port: int, reload: bool) -> None:
    """Start the meshgraph API server."""
    uvicorn.run(
        "meshgraph.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()  # type: ignore[untyped-decorator]
def appenders() -> None:
    """Show the fixed appender order."""
    from meshgraph.graph.appenders import FINALIZER_APPENDERS, REGULAR_APPENDERS

    click.echo("Regular appenders:")
    for position, cls in enumerate(REGULAR_APPENDERS, start=1):
        click.echo(f"  {position}. {cls.name}")
    click.echo("Finalizers:")
    for position, cls in enumerate(FINALIZER_APPENDERS, start=1):
        click.echo(f"  {position}. {cls.name}")


if __name__ == "__main__":
    main()
