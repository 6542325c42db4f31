"""SAML Service Provider metadata.

The document is fully determined by the configuration and the SP
certificate: no IDs, timestamps or validity periods are generated, so
repeated renders are byte-identical.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from lxml import etree

from samlsp.core.crypto import get_certificate_body
from samlsp.core.identity import NAMEID_FORMAT_EMAIL
from samlsp.core.saml.encryption import XENC11_NS, XENC_NS
from samlsp.core.saml.sp import BINDING_HTTP_POST

if TYPE_CHECKING:
    from cryptography import x509

    from samlsp.core.config import SAMLSettings

MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
PROTOCOL_SUPPORT = "urn:oasis:names:tc:SAML:2.0:protocol"

NSMAP = {"md": MD_NS, "ds": DS_NS}

# Content encryption we can decrypt, strongest first
ENCRYPTION_METHODS = (
    f"{XENC11_NS}aes256-gcm",
    f"{XENC11_NS}aes128-gcm",
    f"{XENC_NS}aes256-cbc",
    f"{XENC_NS}aes128-cbc",
)

NAMEID_FORMATS = (NAMEID_FORMAT_EMAIL,)


def _md(tag: str) -> str:
    return f"{{{MD_NS}}}{tag}"


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _key_descriptor(parent: etree._Element, use: str, cert_body: str) -> etree._Element:
    descriptor = etree.SubElement(parent, _md("KeyDescriptor"), use=use)
    key_info = etree.SubElement(descriptor, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate")).text = cert_body
    return descriptor


def build_metadata_element(settings: SAMLSettings, certificate: x509.Certificate) -> etree._Element:
    """Build the md:EntityDescriptor element for this SP.

    Args:
        settings: SAML section of the configuration.
        certificate: SP certificate, used for both signing and encryption.

    Returns:
        The EntityDescriptor root element.
    """
    cert_body = get_certificate_body(certificate)

    root = etree.Element(_md("EntityDescriptor"), nsmap=NSMAP)
    root.set("entityID", settings.issuer)

    sp = etree.SubElement(root, _md("SPSSODescriptor"))
    sp.set("AuthnRequestsSigned", "true")
    sp.set("WantAssertionsSigned", "true")
    sp.set("protocolSupportEnumeration", PROTOCOL_SUPPORT)

    _key_descriptor(sp, "signing", cert_body)
    encryption = _key_descriptor(sp, "encryption", cert_body)
    for algorithm in ENCRYPTION_METHODS:
        etree.SubElement(encryption, _md("EncryptionMethod"), Algorithm=algorithm)

    for name_id_format in NAMEID_FORMATS:
        etree.SubElement(sp, _md("NameIDFormat")).text = name_id_format

    acs = etree.SubElement(sp, _md("AssertionConsumerService"))
    acs.set("Binding", BINDING_HTTP_POST)
    acs.set("Location", settings.callback_url)
    acs.set("index", "1")
    acs.set("isDefault", "true")

    return root


def generate_metadata(settings: SAMLSettings, certificate: x509.Certificate) -> bytes:
    """Render SP metadata as UTF-8 XML bytes."""
    return etree.tostring(
        build_metadata_element(settings, certificate),
        xml_declaration=True,
        encoding="UTF-8",
        pretty_print=True,
    )
