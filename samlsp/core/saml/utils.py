"""SAML utility functions."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from lxml import etree

# Refuse anything that could reach outside the document
_PARSER_OPTIONS = {
    "resolve_entities": False,
    "no_network": True,
    "load_dtd": False,
    "dtd_validation": False,
    "huge_tree": False,
    "remove_blank_text": False,
}

_INSTANT_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$"
)


class UnsafeXMLError(ValueError):
    """Raised for XML that is not well-formed or carries a DTD."""


def parse_xml(data: bytes) -> etree._Element:
    """Parse untrusted XML.

    Entities are never resolved, nothing is fetched from the network, and
    documents with a DOCTYPE are refused outright.

    Raises:
        UnsafeXMLError: If the document is rejected.
    """
    parser = etree.XMLParser(**_PARSER_OPTIONS)
    try:
        root = etree.fromstring(data, parser=parser)
    except etree.XMLSyntaxError as e:
        raise UnsafeXMLError(f"Not well-formed XML: {e}") from e

    if root is None:
        raise UnsafeXMLError("Empty XML document")

    docinfo = root.getroottree().docinfo
    if docinfo.doctype or docinfo.internalDTD is not None:
        raise UnsafeXMLError("XML with a DOCTYPE is not accepted")

    return root


def parse_instant(value: str) -> datetime:
    """Parse a SAML xs:dateTime into an aware UTC datetime.

    Fractional seconds beyond microseconds are truncated. A missing
    timezone is taken as UTC.

    Raises:
        ValueError: If the value is not an xs:dateTime.
    """
    match = _INSTANT_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid SAML instant: {value!r}")

    base, fraction, zone = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if zone and zone != "Z":
        text += zone
    else:
        text += "+00:00"

    fmt = "%Y-%m-%dT%H:%M:%S.%f%z" if fraction else "%Y-%m-%dT%H:%M:%S%z"
    return datetime.strptime(text, fmt).astimezone(UTC)
