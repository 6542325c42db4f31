"""Certificate management CLI commands."""

from pathlib import Path

import click


@click.group()
def certs() -> None:
    """Manage the SP signing and encryption key pair.

    The SP signs its AuthnRequests with this key, the IdP encrypts
    assertions to its certificate, and the certificate is published in
    the SP metadata.
    """
    pass


@certs.command("generate")
@click.option(
    "--common-name",
    "-cn",
    default="localhost",
    help="Common Name (CN) for the certificate",
)
@click.option(
    "--days",
    "-d",
    type=int,
    default=3650,
    help="Days the certificate is valid",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),  # type: ignore[type-var]
    default=Path("cert"),
    show_default=True,
    help="Output directory for key.pem and cert.pem",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing certificate files",
)
def certs_generate(
    common_name: str,
    days: int,
    output: Path,
    force: bool,
) -> None:
    """Generate a new SP key pair and self-signed certificate.

    Examples:

        # Generate cert/key.pem and cert/cert.pem
        samlsp certs generate

        # Generate with the SP host name as common name
        samlsp certs generate --common-name sp.example.edu -o /etc/samlsp
    """
    from samlsp.core.crypto import (
        generate_private_key,
        generate_self_signed_certificate,
        get_certificate_info,
        save_certificate,
        save_private_key,
    )

    if days <= 0:
        raise click.BadParameter("must be positive", param_hint="--days")

    cert_path = output / "cert.pem"
    key_path = output / "key.pem"

    # Check for existing files
    if not force and (cert_path.exists() or key_path.exists()):
        raise click.ClickException(
            f"Certificate files already exist at {output}. Use --force to overwrite."
        )

    click.echo("Generating SP certificate...")
    click.echo(f"  Common Name: {common_name}")
    click.echo(f"  Valid for: {days} days")
    click.echo("")

    private_key = generate_private_key()
    cert = generate_self_signed_certificate(
        private_key,
        common_name=common_name,
        days_valid=days,
    )

    save_private_key(private_key, key_path)
    save_certificate(cert, cert_path)

    info = get_certificate_info(cert)

    click.echo("Certificate generated successfully!")
    click.echo("")
    click.echo("Files created:")
    click.echo(f"  Certificate: {cert_path}")
    click.echo(f"  Private key: {key_path}")
    click.echo("")
    click.echo("Certificate details:")
    click.echo(f"  Subject: {info.subject}")
    click.echo(f"  Valid from: {info.not_before.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    click.echo(f"  Valid until: {info.not_after.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    click.echo(f"  Fingerprint (SHA-256): {info.fingerprint_sha256}")


@certs.command("info")
@click.argument("cert_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))  # type: ignore[type-var]
def certs_info(cert_path: Path) -> None:
    """Show details of a PEM certificate, such as the IdP's.

    Examples:

        samlsp certs info cert/idp_cert.pem
    """
    from samlsp.core.crypto import CertificateError, get_certificate_info, load_certificate

    try:
        info = get_certificate_info(load_certificate(cert_path))
    except CertificateError as e:
        raise click.ClickException(str(e)) from None

    click.echo(f"Subject: {info.subject}")
    click.echo(f"Issuer: {info.issuer}")
    click.echo(f"Serial: {info.serial_number}")
    click.echo(f"Valid from: {info.not_before.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    click.echo(f"Valid until: {info.not_after.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    click.echo(f"Key size: {info.key_size} bits")
    click.echo(f"Fingerprint (SHA-256): {info.fingerprint_sha256}")
