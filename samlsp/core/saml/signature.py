"""SAML signature verification.

Verifies the enveloped XML signature on a Response or Assertion against
the IdP's X.509 certificate. Callers must read data only from the element
returned here, never from the document they passed in: that is the
defence against signature wrapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import SignXMLException

logger = logging.getLogger(__name__)

# XML namespace for signatures
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"


class SignatureLocation(StrEnum):
    """Which element the verified signature covers."""

    RESPONSE = "response"
    ASSERTION = "assertion"


# Mapping of signature algorithm URIs to friendly names
SIGNATURE_ALGORITHMS: dict[str, str] = {
    "http://www.w3.org/2000/09/xmldsig#rsa-sha1": "RSA-SHA1",
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256": "RSA-SHA256",
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384": "RSA-SHA384",
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": "RSA-SHA512",
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": "ECDSA-SHA256",
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha384": "ECDSA-SHA384",
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha512": "ECDSA-SHA512",
}


class SignatureVerificationError(Exception):
    """Raised when no trusted signature covers the message."""


@dataclass
class VerifiedSignature:
    """A successfully verified signature and what it covers."""

    location: SignatureLocation
    signed_element: etree._Element
    algorithm: str | None = None

    @property
    def algorithm_name(self) -> str:
        """Friendly name of the signature algorithm."""
        if not self.algorithm:
            return "unknown"
        return SIGNATURE_ALGORITHMS.get(self.algorithm, self.algorithm)


def find_signature(elem: etree._Element) -> etree._Element | None:
    """Return the enveloped Signature that is a direct child of elem."""
    return elem.find(f"{{{DSIG_NS}}}Signature")


def has_signature(doc: etree._Element) -> bool:
    """Whether the Response or any Assertion in it carries a Signature."""
    if find_signature(doc) is not None:
        return True
    for assertion in doc.iter(f"{{{SAML_NS}}}Assertion"):
        if find_signature(assertion) is not None:
            return True
    return False


def _signature_algorithm(sig_elem: etree._Element | None) -> str | None:
    if sig_elem is None:
        return None
    method = sig_elem.find(f"{{{DSIG_NS}}}SignedInfo/{{{DSIG_NS}}}SignatureMethod")
    return method.get("Algorithm") if method is not None else None


def _prepare_certificate(cert_pem: str) -> str:
    """Ensure certificate is in proper PEM format."""
    cert = cert_pem.strip()

    # If it doesn't have PEM headers, add them
    if not cert.startswith("-----BEGIN"):
        cert_data = "".join(cert.split())
        cert = f"-----BEGIN CERTIFICATE-----\n{cert_data}\n-----END CERTIFICATE-----"

    return cert


def verify_signature(doc: etree._Element, idp_certificate: str) -> VerifiedSignature:
    """Verify the signature on a SAML Response document.

    A signature directly on the Response takes precedence; otherwise the
    signature on the (single) Assertion is verified. Only the IdP
    certificate is trusted, whatever KeyInfo the signature carries.

    Args:
        doc: Parsed Response root element.
        idp_certificate: PEM-encoded X.509 certificate of the IdP.

    Returns:
        VerifiedSignature holding the element that was actually signed.

    Raises:
        SignatureVerificationError: If the signature is absent, malformed
            or does not verify.
    """
    if not has_signature(doc):
        raise SignatureVerificationError("No signature found in SAML Response or Assertion")

    response_signature = find_signature(doc)
    if response_signature is not None:
        algorithm = _signature_algorithm(response_signature)
    else:
        assertion = doc.find(f".//{{{SAML_NS}}}Assertion")
        algorithm = _signature_algorithm(
            find_signature(assertion) if assertion is not None else None
        )

    try:
        result = XMLVerifier().verify(
            doc,
            x509_cert=_prepare_certificate(idp_certificate),
        )
    except (SignXMLException, CryptoInvalidSignature, etree.LxmlError, ValueError) as e:
        raise SignatureVerificationError(f"Signature verification failed: {e}") from e

    signed = result.signed_xml
    if signed is None:
        raise SignatureVerificationError("Signature does not reference an element")

    if signed.tag == f"{{{SAMLP_NS}}}Response":
        location = SignatureLocation.RESPONSE
    elif signed.tag == f"{{{SAML_NS}}}Assertion":
        location = SignatureLocation.ASSERTION
    else:
        raise SignatureVerificationError(f"Signature covers unexpected element {signed.tag}")

    verified = VerifiedSignature(location=location, signed_element=signed, algorithm=algorithm)
    logger.debug("Verified %s signature on %s", verified.algorithm_name, location)
    return verified
