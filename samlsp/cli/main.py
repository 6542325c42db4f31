"""CLI entry point for samlsp."""

from pathlib import Path

import click

from samlsp import __version__
from samlsp.cli import certs as certs_commands
from samlsp.cli import config as config_commands
from samlsp.cli import serve as serve_commands


@click.group()
@click.version_option(version=__version__, prog_name="samlsp")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """samlsp - SAML 2.0 Service Provider."""
    ctx.ensure_object(dict)


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Path to config.yaml (default: ~/.samlsp/config.yaml)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Write metadata to a file instead of stdout",
)
def metadata(config_path: Path | None, output: Path | None) -> None:
    """Print the SP metadata XML to hand to the IdP.

    Examples:

        samlsp metadata > sp-metadata.xml

        samlsp metadata --config ./config.yaml -o sp-metadata.xml
    """
    from samlsp.core.config import ConfigurationError, load_config
    from samlsp.core.crypto import CertificateError, load_certificate
    from samlsp.core.saml.metadata import generate_metadata

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from None

    missing = [
        name
        for name, value in (
            ("saml.issuer", config.saml.issuer),
            ("saml.callback_url", config.saml.callback_url),
        )
        if not value
    ]
    if missing:
        raise click.ClickException(f"Missing required settings: {', '.join(missing)}")

    try:
        certificate = load_certificate(config.saml.certificate_path)
    except CertificateError as e:
        raise click.ClickException(str(e)) from None

    xml = generate_metadata(config.saml, certificate)

    if output:
        output.write_bytes(xml)
        click.echo(f"Metadata written to {output}")
    else:
        click.echo(xml.decode("utf-8"), nl=False)


cli.add_command(config_commands.config)
cli.add_command(certs_commands.certs)
cli.add_command(serve_commands.serve)
