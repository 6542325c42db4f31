"""SAML Service Provider messages.

Builds signed AuthnRequests for the HTTP-Redirect binding and parses
SAML Responses and Assertions into plain dataclasses.
"""

from __future__ import annotations

import base64
import html
import secrets
import zlib
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, quote_plus, urlparse

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

if TYPE_CHECKING:
    from samlsp.core.config import Credentials, SAMLSettings


# SAML namespaces
SAML_NS = {
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "xenc": "http://www.w3.org/2001/04/xmlenc#",
}

BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"

SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"


def format_instant(value: datetime) -> str:
    """Format a datetime as a SAML xs:dateTime in UTC."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class AuthnRequestContext:
    """Correlates an outbound AuthnRequest with the Response it provokes."""

    request_id: str
    issued_at: datetime
    expires_at: datetime
    return_to: str = "/"

    def is_expired(self, now: datetime) -> bool:
        """Check whether the request may no longer be answered."""
        return now >= self.expires_at


@dataclass
class SAMLRequest:
    """Represents a SAML AuthnRequest."""

    id: str
    issue_instant: str
    issuer: str
    destination: str
    acs_url: str

    def to_xml(self) -> str:
        """Generate the AuthnRequest XML."""
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<samlp:AuthnRequest
    xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="{self.id}"
    Version="2.0"
    IssueInstant="{self.issue_instant}"
    Destination="{html.escape(self.destination)}"
    AssertionConsumerServiceURL="{html.escape(self.acs_url)}"
    ProtocolBinding="{BINDING_HTTP_POST}">
    <saml:Issuer>{html.escape(self.issuer)}</saml:Issuer>
</samlp:AuthnRequest>"""

    def encode_redirect(self) -> str:
        """Encode request for HTTP-Redirect binding (deflate + base64)."""
        xml_bytes = self.to_xml().encode("utf-8")
        # Raw deflate, no zlib header or checksum
        compressed = zlib.compress(xml_bytes)[2:-4]
        return base64.b64encode(compressed).decode("utf-8")


@dataclass
class SAMLAssertion:
    """Represents a SAML Assertion."""

    assertion_id: str
    issuer: str | None
    subject_name_id: str | None
    subject_name_id_format: str | None
    conditions_not_before: str | None
    conditions_not_on_or_after: str | None
    audience_restrictions: list[str] = field(default_factory=list)
    has_audience_restriction: bool = False
    confirmation_method: str | None = None
    confirmation_recipient: str | None = None
    confirmation_not_on_or_after: str | None = None
    confirmation_in_response_to: str | None = None
    authn_instant: str | None = None
    session_index: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_element(cls, elem: etree._Element) -> SAMLAssertion:
        """Parse an Assertion XML element."""
        issuer_elem = elem.find("saml:Issuer", SAML_NS)
        issuer = _text(issuer_elem)

        # Subject
        subject_elem = elem.find("saml:Subject/saml:NameID", SAML_NS)
        subject_name_id = _text(subject_elem)
        subject_name_id_format = (
            subject_elem.get("Format") if subject_elem is not None else None
        )

        # Bearer subject confirmation
        confirmation_method = None
        confirmation_recipient = None
        confirmation_not_on_or_after = None
        confirmation_in_response_to = None
        confirmation_elem = elem.find("saml:Subject/saml:SubjectConfirmation", SAML_NS)
        if confirmation_elem is not None:
            confirmation_method = confirmation_elem.get("Method")
            data_elem = confirmation_elem.find("saml:SubjectConfirmationData", SAML_NS)
            if data_elem is not None:
                confirmation_recipient = data_elem.get("Recipient")
                confirmation_not_on_or_after = data_elem.get("NotOnOrAfter")
                confirmation_in_response_to = data_elem.get("InResponseTo")

        # Conditions
        conditions_elem = elem.find("saml:Conditions", SAML_NS)
        conditions_not_before = None
        conditions_not_on_or_after = None
        audience_restrictions: list[str] = []
        has_audience_restriction = False

        if conditions_elem is not None:
            conditions_not_before = conditions_elem.get("NotBefore")
            conditions_not_on_or_after = conditions_elem.get("NotOnOrAfter")
            has_audience_restriction = (
                conditions_elem.find("saml:AudienceRestriction", SAML_NS) is not None
            )

            for audience_elem in conditions_elem.findall(
                "saml:AudienceRestriction/saml:Audience", SAML_NS
            ):
                if audience_elem.text:
                    audience_restrictions.append(audience_elem.text.strip())

        # AuthnStatement
        authn_stmt = elem.find("saml:AuthnStatement", SAML_NS)
        authn_instant = None
        session_index = None
        if authn_stmt is not None:
            authn_instant = authn_stmt.get("AuthnInstant")
            session_index = authn_stmt.get("SessionIndex")

        # Attributes
        attributes: dict[str, list[str]] = {}
        for attr_elem in elem.findall(
            "saml:AttributeStatement/saml:Attribute", SAML_NS
        ):
            values: list[str] = []
            for value_elem in attr_elem.findall("saml:AttributeValue", SAML_NS):
                if value_elem.text:
                    values.append(value_elem.text)

            # Index under both Name and FriendlyName
            for key in (attr_elem.get("Name"), attr_elem.get("FriendlyName")):
                if key:
                    attributes.setdefault(key, []).extend(values)

        return cls(
            assertion_id=elem.get("ID", ""),
            issuer=issuer,
            subject_name_id=subject_name_id,
            subject_name_id_format=subject_name_id_format,
            conditions_not_before=conditions_not_before,
            conditions_not_on_or_after=conditions_not_on_or_after,
            audience_restrictions=audience_restrictions,
            has_audience_restriction=has_audience_restriction,
            confirmation_method=confirmation_method,
            confirmation_recipient=confirmation_recipient,
            confirmation_not_on_or_after=confirmation_not_on_or_after,
            confirmation_in_response_to=confirmation_in_response_to,
            authn_instant=authn_instant,
            session_index=session_index,
            attributes=attributes,
        )


@dataclass
class SAMLResponse:
    """Represents the envelope of a SAML Response."""

    response_id: str
    in_response_to: str | None
    issue_instant: str | None
    destination: str | None
    issuer: str | None
    status_code: str | None
    status_message: str | None

    @property
    def is_success(self) -> bool:
        """Whether the IdP reported success."""
        return self.status_code == STATUS_SUCCESS

    @classmethod
    def from_element(cls, root: etree._Element) -> SAMLResponse:
        """Parse a Response root element."""
        status_elem = root.find("samlp:Status/samlp:StatusCode", SAML_NS)
        status_msg_elem = root.find("samlp:Status/samlp:StatusMessage", SAML_NS)

        return cls(
            response_id=root.get("ID", ""),
            in_response_to=root.get("InResponseTo"),
            issue_instant=root.get("IssueInstant"),
            destination=root.get("Destination"),
            issuer=_text(root.find("saml:Issuer", SAML_NS)),
            status_code=status_elem.get("Value") if status_elem is not None else None,
            status_message=_text(status_msg_elem),
        )


def _text(elem: etree._Element | None) -> str | None:
    """Stripped text of an element, or None."""
    if elem is None or elem.text is None:
        return None
    return elem.text.strip()


class SAMLServiceProvider:
    """SAML Service Provider identity and outbound messages.

    This class handles:
    - Generating AuthnRequests for SP-Initiated SSO
    - Signing them for the HTTP-Redirect binding
    - Rendering the SP metadata document
    """

    def __init__(self, settings: SAMLSettings, credentials: Credentials) -> None:
        """Initialize the SAML Service Provider.

        Args:
            settings: SAML section of the application configuration.
            credentials: SP key pair and IdP certificate.
        """
        self.settings = settings
        self.credentials = credentials
        self._metadata: bytes | None = None

    @property
    def entity_id(self) -> str:
        """Get the SP entity ID."""
        return self.settings.issuer

    @property
    def acs_url(self) -> str:
        """Get the Assertion Consumer Service URL."""
        return self.settings.callback_url

    @property
    def idp_sso_url(self) -> str:
        """Get the IdP SSO URL."""
        return self.settings.entry_point

    def create_authn_request(self, now: datetime | None = None) -> SAMLRequest:
        """Create an AuthnRequest for SP-Initiated SSO.

        Returns:
            SAMLRequest object ready to be encoded and sent.
        """
        # 128 random bits; IDs must start with a letter or underscore
        request_id = f"_{secrets.token_hex(16)}"

        return SAMLRequest(
            id=request_id,
            issue_instant=format_instant(now or datetime.now(UTC)),
            issuer=self.entity_id,
            destination=self.idp_sso_url,
            acs_url=self.acs_url,
        )

    def create_request_context(
        self,
        request: SAMLRequest,
        return_to: str,
        now: datetime,
    ) -> AuthnRequestContext:
        """Build the correlation record for an outbound request."""
        return AuthnRequestContext(
            request_id=request.id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.request_ttl_seconds),
            return_to=return_to,
        )

    def build_sso_redirect_url(
        self,
        request: SAMLRequest,
        relay_state: str | None = None,
    ) -> str:
        """Build the signed SSO redirect URL.

        The signature covers ``SAMLRequest=..&RelayState=..&SigAlg=..`` exactly
        as it appears in the query string.

        Args:
            request: The SAMLRequest to encode.
            relay_state: Optional RelayState to preserve across the SSO flow.

        Returns:
            Complete URL to redirect the user to.
        """
        if not self.idp_sso_url:
            raise ValueError("IdP SSO URL not configured")

        signed_parts = [f"SAMLRequest={quote_plus(request.encode_redirect())}"]
        if relay_state:
            signed_parts.append(f"RelayState={quote_plus(relay_state)}")
        signed_parts.append(f"SigAlg={quote_plus(SIG_ALG_RSA_SHA256)}")
        signed_query = "&".join(signed_parts)

        signature = self.credentials.private_key.sign(
            signed_query.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        query = f"{signed_query}&Signature={quote_plus(base64.b64encode(signature).decode('ascii'))}"

        # Keep any parameters already present on the entry point
        parsed = urlparse(self.idp_sso_url)
        existing = [
            f"{quote_plus(k)}={quote_plus(v)}"
            for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if k not in ("SAMLRequest", "RelayState", "SigAlg", "Signature")
        ]
        if existing:
            query = "&".join(existing) + "&" + query

        return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?{query}"

    def generate_metadata(self) -> bytes:
        """Return the SP metadata document.

        Rendered once; configuration is immutable after startup.
        """
        if self._metadata is None:
            from samlsp.core.saml.metadata import generate_metadata

            self._metadata = generate_metadata(self.settings, self.credentials.certificate)
        return self._metadata
