"""Key and certificate utilities.

Loads the SP key pair and the IdP certificate from PEM files, and generates
self-signed SP certificates for registration with an IdP.
"""

from __future__ import annotations

import base64
import os
import stat
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


class CertificateError(Exception):
    """Base exception for certificate-related errors."""


class CertificateLoadError(CertificateError):
    """Raised when a certificate cannot be loaded."""


class KeyLoadError(CertificateError):
    """Raised when a private key cannot be loaded."""


@dataclass
class CertificateInfo:
    """Information extracted from an X.509 certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint_sha256: str
    key_size: int


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: RSA key size in bits. Default 2048.

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def generate_self_signed_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "localhost",
    organization: str = "samlsp",
    days_valid: int = 3650,
) -> x509.Certificate:
    """Generate a self-signed certificate for SAML signing and encryption.

    SAML peers pin the certificate from metadata rather than walking a chain,
    so a long-lived self-signed certificate is the norm.

    Args:
        private_key: RSA private key to sign the certificate.
        common_name: Common Name (CN) for the certificate subject.
        organization: Organization (O) for the certificate subject.
        days_valid: Number of days the certificate is valid.

    Returns:
        Self-signed X.509 certificate.
    """
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    now = datetime.now(UTC)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(private_key, hashes.SHA256())
    )

    return cert


def save_private_key(private_key: rsa.RSAPrivateKey, path: Path) -> None:
    """Save a private key to a PEM file with secure permissions.

    Args:
        private_key: RSA private key to save.
        path: Path to write the key file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    pem_data = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    # Write with restricted permissions (0600)
    path.touch(mode=0o600)
    path.write_bytes(pem_data)
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def save_certificate(cert: x509.Certificate, path: Path) -> None:
    """Save a certificate to a PEM file.

    Args:
        cert: X.509 certificate to save.
        path: Path to write the certificate file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def load_private_key(path: Path, password: bytes | None = None) -> rsa.RSAPrivateKey:
    """Load a private key from a PEM file.

    Args:
        path: Path to the key file.
        password: Optional password if key is encrypted.

    Returns:
        RSA private key.

    Raises:
        KeyLoadError: If the key cannot be loaded.
    """
    if not path.exists():
        raise KeyLoadError(f"Private key file not found: {path}")

    try:
        key = serialization.load_pem_private_key(path.read_bytes(), password=password)
    except (ValueError, TypeError) as e:
        raise KeyLoadError(f"Failed to load private key from {path}: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyLoadError(f"Expected RSA private key, got {type(key).__name__}")
    return key


def load_certificate(path: Path) -> x509.Certificate:
    """Load a certificate from a PEM file.

    Args:
        path: Path to the certificate file.

    Returns:
        X.509 certificate.

    Raises:
        CertificateLoadError: If the certificate cannot be loaded.
    """
    if not path.exists():
        raise CertificateLoadError(f"Certificate file not found: {path}")

    try:
        return x509.load_pem_x509_certificate(path.read_bytes())
    except ValueError as e:
        raise CertificateLoadError(f"Failed to load certificate from {path}: {e}") from e


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    """Extract information from an X.509 certificate."""
    public_key = cert.public_key()
    key_size = public_key.key_size if isinstance(public_key, rsa.RSAPublicKey) else 0

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
        key_size=key_size,
    )


def key_matches_certificate(private_key: rsa.RSAPrivateKey, cert: x509.Certificate) -> bool:
    """Whether the key is the private half of the certificate's public key.

    A mismatch means the IdP can neither verify our AuthnRequests nor
    encrypt assertions we are able to read.
    """
    public_key = cert.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    return public_key.public_numbers() == private_key.public_key().public_numbers()


def get_private_key_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Get PEM-encoded string of an unencrypted private key."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def get_certificate_pem(cert: x509.Certificate) -> str:
    """Get PEM-encoded string of a certificate."""
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def get_certificate_body(cert: x509.Certificate) -> str:
    """Get the base64 DER body of a certificate, as used in ds:X509Certificate."""
    der = cert.public_bytes(serialization.Encoding.DER)
    return base64.b64encode(der).decode("ascii")
