"""XML Encryption support for EncryptedAssertion elements.

Key transport is RSA-OAEP only. RSA PKCS#1 v1.5 key transport is
vulnerable to padding-oracle attacks and is refused.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from lxml import etree

from samlsp.core.saml.utils import UnsafeXMLError, parse_xml

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
XENC11_NS = "http://www.w3.org/2009/xmlenc11#"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"

# Key transport
KEY_TRANSPORT_RSA_OAEP_MGF1P = f"{XENC_NS}rsa-oaep-mgf1p"
KEY_TRANSPORT_RSA_OAEP = f"{XENC11_NS}rsa-oaep"
KEY_TRANSPORT_RSA_1_5 = f"{XENC_NS}rsa-1_5"

# Block encryption: algorithm URI -> (mode, key length in bytes)
BLOCK_ALGORITHMS: dict[str, tuple[str, int]] = {
    f"{XENC_NS}aes128-cbc": ("cbc", 16),
    f"{XENC_NS}aes192-cbc": ("cbc", 24),
    f"{XENC_NS}aes256-cbc": ("cbc", 32),
    f"{XENC11_NS}aes128-gcm": ("gcm", 16),
    f"{XENC11_NS}aes192-gcm": ("gcm", 24),
    f"{XENC11_NS}aes256-gcm": ("gcm", 32),
}

DIGEST_ALGORITHMS: dict[str, type[hashes.HashAlgorithm]] = {
    "http://www.w3.org/2000/09/xmldsig#sha1": hashes.SHA1,
    "http://www.w3.org/2001/04/xmlenc#sha256": hashes.SHA256,
    "http://www.w3.org/2001/04/xmldsig-more#sha384": hashes.SHA384,
    "http://www.w3.org/2001/04/xmlenc#sha512": hashes.SHA512,
}

MGF_ALGORITHMS: dict[str, type[hashes.HashAlgorithm]] = {
    f"{XENC11_NS}mgf1sha1": hashes.SHA1,
    f"{XENC11_NS}mgf1sha224": hashes.SHA224,
    f"{XENC11_NS}mgf1sha256": hashes.SHA256,
    f"{XENC11_NS}mgf1sha384": hashes.SHA384,
    f"{XENC11_NS}mgf1sha512": hashes.SHA512,
}

GCM_IV_BYTES = 12
CBC_IV_BYTES = 16


class DecryptionError(Exception):
    """Raised when an EncryptedAssertion cannot be decrypted."""


def _cipher_value(parent: etree._Element) -> bytes:
    elem = parent.find(f"{{{XENC_NS}}}CipherData/{{{XENC_NS}}}CipherValue")
    if elem is None or not elem.text:
        raise DecryptionError("Missing CipherValue")
    try:
        return base64.b64decode("".join(elem.text.split()), validate=True)
    except binascii.Error as e:
        raise DecryptionError(f"CipherValue is not base64: {e}") from e


def _find_encrypted_key(encrypted_assertion: etree._Element, encrypted_data: etree._Element) -> etree._Element:
    """Locate the EncryptedKey, inside KeyInfo or as a sibling of EncryptedData."""
    key = encrypted_data.find(f"{{{DSIG_NS}}}KeyInfo/{{{XENC_NS}}}EncryptedKey")
    if key is None:
        key = encrypted_assertion.find(f"{{{XENC_NS}}}EncryptedKey")
    if key is None:
        raise DecryptionError("No EncryptedKey found")
    return key


def _oaep_padding(method: etree._Element) -> padding.OAEP:
    algorithm = method.get("Algorithm")

    digest_elem = method.find(f"{{{DSIG_NS}}}DigestMethod")
    digest_uri = digest_elem.get("Algorithm") if digest_elem is not None else None
    digest_cls = DIGEST_ALGORITHMS.get(digest_uri or "http://www.w3.org/2000/09/xmldsig#sha1")
    if digest_cls is None:
        raise DecryptionError(f"Unsupported OAEP digest: {digest_uri}")

    mgf_cls: type[hashes.HashAlgorithm] = hashes.SHA1
    if algorithm == KEY_TRANSPORT_RSA_OAEP:
        mgf_elem = method.find(f"{{{XENC11_NS}}}MGF")
        if mgf_elem is not None:
            mgf_uri = mgf_elem.get("Algorithm")
            found = MGF_ALGORITHMS.get(mgf_uri or "")
            if found is None:
                raise DecryptionError(f"Unsupported MGF: {mgf_uri}")
            mgf_cls = found

    return padding.OAEP(mgf=padding.MGF1(mgf_cls()), algorithm=digest_cls(), label=None)


def decrypt_key(encrypted_key: etree._Element, private_key: rsa.RSAPrivateKey) -> bytes:
    """Unwrap the symmetric key carried in an EncryptedKey element.

    Raises:
        DecryptionError: For refused algorithms or a key that does not unwrap.
    """
    method = encrypted_key.find(f"{{{XENC_NS}}}EncryptionMethod")
    if method is None:
        raise DecryptionError("EncryptedKey has no EncryptionMethod")

    algorithm = method.get("Algorithm")
    if algorithm == KEY_TRANSPORT_RSA_1_5:
        raise DecryptionError("RSA PKCS#1 v1.5 key transport is not accepted")
    if algorithm not in (KEY_TRANSPORT_RSA_OAEP_MGF1P, KEY_TRANSPORT_RSA_OAEP):
        raise DecryptionError(f"Unsupported key transport algorithm: {algorithm}")

    try:
        return private_key.decrypt(_cipher_value(encrypted_key), _oaep_padding(method))
    except ValueError as e:
        raise DecryptionError("Could not unwrap the content encryption key") from e


def decrypt_data(encrypted_data: etree._Element, key: bytes) -> bytes:
    """Decrypt the content of an EncryptedData element.

    Raises:
        DecryptionError: For unsupported algorithms or corrupt ciphertext.
    """
    method = encrypted_data.find(f"{{{XENC_NS}}}EncryptionMethod")
    algorithm = method.get("Algorithm") if method is not None else None
    if algorithm not in BLOCK_ALGORITHMS:
        raise DecryptionError(f"Unsupported block encryption algorithm: {algorithm}")

    mode, key_length = BLOCK_ALGORITHMS[algorithm]
    if len(key) != key_length:
        raise DecryptionError("Content encryption key has the wrong length")

    data = _cipher_value(encrypted_data)

    if mode == "gcm":
        if len(data) < GCM_IV_BYTES + 16:
            raise DecryptionError("Ciphertext too short")
        try:
            return AESGCM(key).decrypt(data[:GCM_IV_BYTES], data[GCM_IV_BYTES:], None)
        except InvalidTag as e:
            raise DecryptionError("Authenticated decryption failed") from e

    iv, ciphertext = data[:CBC_IV_BYTES], data[CBC_IV_BYTES:]
    if not ciphertext or len(ciphertext) % CBC_IV_BYTES:
        raise DecryptionError("Ciphertext is not a whole number of blocks")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    # XML Encryption padding: only the last byte is significant
    pad = padded[-1]
    if pad < 1 or pad > CBC_IV_BYTES:
        raise DecryptionError("Invalid padding")
    return padded[:-pad]


def decrypt_assertion(
    encrypted_assertion: etree._Element,
    private_key: rsa.RSAPrivateKey,
) -> etree._Element:
    """Decrypt a saml:EncryptedAssertion into its saml:Assertion.

    Args:
        encrypted_assertion: The EncryptedAssertion element.
        private_key: The SP decryption key.

    Returns:
        The decrypted Assertion element, parsed with the hardened parser.

    Raises:
        DecryptionError: If decryption fails or the plaintext is not an Assertion.
    """
    encrypted_data = encrypted_assertion.find(f"{{{XENC_NS}}}EncryptedData")
    if encrypted_data is None:
        raise DecryptionError("EncryptedAssertion has no EncryptedData")

    key = decrypt_key(_find_encrypted_key(encrypted_assertion, encrypted_data), private_key)
    plaintext = decrypt_data(encrypted_data, key)

    try:
        assertion = parse_xml(plaintext)
    except UnsafeXMLError as e:
        raise DecryptionError(f"Decrypted content is not acceptable XML: {e}") from e

    if assertion.tag != f"{{{SAML_NS}}}Assertion":
        raise DecryptionError(f"Decrypted content is {assertion.tag}, not an Assertion")

    logger.debug("Decrypted assertion %s", assertion.get("ID"))
    return assertion
