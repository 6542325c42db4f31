"""Server CLI commands."""

from pathlib import Path

import click


@click.command()
@click.option(
    "--host",
    "-h",
    default=None,
    help="Host to bind to (default: from config or 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (default: from config or 4006)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug mode",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Path to config.yaml (default: ~/.samlsp/config.yaml)",
)
def serve(
    host: str | None,
    port: int | None,
    debug: bool,
    config_path: Path | None,
) -> None:
    """Start the service provider web server.

    Configuration is read from config.yaml and SAMLSP_* environment
    variables. The server refuses to start if the IdP endpoints, issuers,
    session secret or key material are missing.

    Examples:

        # Start with ~/.samlsp/config.yaml
        samlsp serve

        # Start on custom port
        samlsp serve --port 8080

        # Use a project-local config file
        samlsp serve --config ./config.yaml
    """
    from samlsp.app import run_server
    from samlsp.core.config import ConfigurationError, load_config

    try:
        config = load_config(config_path)
        run_server(app_config=config, host=host, port=port, debug=debug or None)
    except ConfigurationError as e:
        raise click.ClickException(f"Configuration error: {e}") from None
