"""Key material handling."""

from samlsp.core.crypto.certs import (
    CertificateError,
    CertificateInfo,
    CertificateLoadError,
    KeyLoadError,
    generate_private_key,
    generate_self_signed_certificate,
    get_certificate_body,
    get_certificate_info,
    get_certificate_pem,
    get_private_key_pem,
    key_matches_certificate,
    load_certificate,
    load_private_key,
    save_certificate,
    save_private_key,
)

__all__ = [
    "CertificateError",
    "CertificateInfo",
    "CertificateLoadError",
    "KeyLoadError",
    "generate_private_key",
    "generate_self_signed_certificate",
    "get_certificate_body",
    "get_certificate_info",
    "get_certificate_pem",
    "get_private_key_pem",
    "key_matches_certificate",
    "load_certificate",
    "load_private_key",
    "save_certificate",
    "save_private_key",
]
