"""Configuration management CLI commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)

config_path_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Path to config.yaml (default: ~/.samlsp/config.yaml)",
)

REDACTED = "********"


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result as JSON or YAML.

    Args:
        data: Data to output
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), nl=False)


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    This function never returns - it either raises ClickException or calls sys.exit.

    Args:
        message: Error message
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


@click.group()
def config() -> None:
    """Manage samlsp configuration."""
    pass


@config.command("init")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite an existing config file.",
)
@config_path_option
def config_init(force: bool, config_path: Path | None) -> None:
    """Write a commented config.yaml with default settings.

    Examples:

        # Create ~/.samlsp/config.yaml
        samlsp config init

        # Create a project-local config
        samlsp config init --config ./config.yaml
    """
    from samlsp.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml

    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists() and not force:
        raise click.ClickException(f"Config file already exists at {path}. Use --force to overwrite.")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_default_config_yaml())

    click.echo(f"Configuration written to: {path}")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Fill in the saml section and session.secret")
    click.echo("  2. Run 'samlsp certs generate' to create the SP key pair")
    click.echo("  3. Run 'samlsp metadata' and register the SP with your IdP")


@config.command("show")
@config_path_option
@json_option
def config_show(config_path: Path | None, output_json: bool) -> None:
    """Show the effective configuration (file plus environment).

    The session secret is masked.
    """
    from samlsp.core.config import ConfigurationError, load_config

    try:
        app_config = load_config(config_path)
    except ConfigurationError as e:
        error_result(str(e), output_json)

    data = app_config.to_dict()
    if data["session"]["secret"]:
        data["session"]["secret"] = REDACTED
    output_result(data, output_json)


@config.command("validate")
@config_path_option
@json_option
def config_validate(config_path: Path | None, output_json: bool) -> None:
    """Check that the service provider can start with this configuration.

    Verifies required settings and loads every key and certificate.
    """
    from samlsp.core.config import ConfigurationError, load_config

    try:
        app_config = load_config(config_path)
        app_config.validate()
        app_config.load_credentials()
    except ConfigurationError as e:
        error_result(str(e), output_json)

    if output_json:
        output_result({"valid": True, "entity_id": app_config.saml.issuer}, as_json=True)
    else:
        click.echo(f"Configuration OK for {app_config.saml.issuer}")
