"""SAML Response validation.

Turns a raw ``SAMLResponse`` POST parameter into an Identity, or rejects
it with a ValidationError naming the failed stage. Checks run in a fixed
order and stop at the first failure:

1. well-formedness
2. signature (decrypting first when an unsigned Response wraps an
   EncryptedAssertion)
3. status
4. issuer
5. audience and recipient
6. validity window
7. claim mapping
8. replay
9. InResponseTo correlation

The stateful checks (replay, correlation) run last so a response rejected
for any other reason neither burns its assertion ID nor consumes the
pending AuthnRequest.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from lxml import etree

from samlsp.core.identity import ClaimMapping, Identity, MissingClaimError, build_identity
from samlsp.core.logging import Direction, SAMLMessage, get_protocol_logger
from samlsp.core.saml.encryption import DecryptionError, decrypt_assertion
from samlsp.core.saml.exceptions import (
    AudienceMismatch,
    DecryptionFailed,
    Expired,
    IssuerMismatch,
    MalformedResponse,
    MissingAttribute,
    Replayed,
    SignatureInvalid,
    StatusError,
    ValidationError,
    ValidationStage,
)
from samlsp.core.saml.signature import (
    SignatureLocation,
    SignatureVerificationError,
    find_signature,
    verify_signature,
)
from samlsp.core.saml.sp import (
    BINDING_HTTP_POST,
    SAML_NS,
    SUBJECT_CONFIRMATION_BEARER,
    AuthnRequestContext,
    SAMLAssertion,
    SAMLResponse,
)
from samlsp.core.saml.utils import UnsafeXMLError, parse_instant, parse_xml

if TYPE_CHECKING:
    from samlsp.core.config import Credentials, SAMLSettings
    from samlsp.core.logging import ProtocolLogger
    from samlsp.storage.stores import ReplayCache, RequestStore

logger = logging.getLogger(__name__)

# Upper bound on the base64 POST parameter
MAX_RESPONSE_BYTES = 1024 * 1024

RESPONSE_TAG = f"{{{SAML_NS['samlp']}}}Response"
ASSERTION_TAG = f"{{{SAML_NS['saml']}}}Assertion"
ENCRYPTED_ASSERTION_TAG = f"{{{SAML_NS['saml']}}}EncryptedAssertion"


@dataclass(frozen=True)
class ValidatedResponse:
    """Everything the flow controller needs from an accepted Response."""

    identity: Identity
    request: AuthnRequestContext | None
    assertion_id: str
    session_index: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _status_error(response: SAMLResponse) -> StatusError:
    detail = f": {response.status_message}" if response.status_message else ""
    return StatusError(f"IdP returned status {response.status_code}{detail}")


def decode_response(raw: str | bytes) -> bytes:
    """Base64-decode the SAMLResponse form parameter.

    Raises:
        MalformedResponse: If the value is empty, oversized or not base64.
    """
    if isinstance(raw, str):
        try:
            raw = raw.encode("ascii")
        except UnicodeEncodeError as e:
            raise MalformedResponse("SAMLResponse is not base64") from e

    if not raw or not raw.strip():
        raise MalformedResponse("Empty SAMLResponse")
    if len(raw) > MAX_RESPONSE_BYTES:
        raise MalformedResponse("SAMLResponse too large")

    try:
        return base64.b64decode(b"".join(raw.split()), validate=True)
    except binascii.Error as e:
        raise MalformedResponse(f"SAMLResponse is not base64: {e}") from e


class AssertionValidator:
    """Validates SAML Responses posted to the Assertion Consumer Service."""

    def __init__(
        self,
        settings: SAMLSettings,
        credentials: Credentials,
        replay_cache: ReplayCache,
        request_store: RequestStore | None = None,
        mapping: ClaimMapping | None = None,
        clock: Callable[[], datetime] = _utcnow,
        protocol_logger: ProtocolLogger | None = None,
    ) -> None:
        """Initialize the validator.

        Args:
            settings: SAML section of the configuration.
            credentials: Holds the IdP certificate and SP decryption key.
            replay_cache: Records accepted assertion IDs.
            request_store: Outstanding AuthnRequests, for InResponseTo lookup.
            mapping: Attribute to Identity mapping. Built from settings if omitted.
            clock: Source of the current time.
            protocol_logger: Logger for inbound messages.
        """
        self.settings = settings
        self.credentials = credentials
        self.replay_cache = replay_cache
        self.request_store = request_store
        self.mapping = mapping or ClaimMapping.from_settings(settings.claims)
        self._clock = clock
        self._protocol_logger = protocol_logger

    @property
    def skew(self) -> timedelta:
        """Tolerated clock difference with the IdP."""
        return timedelta(seconds=self.settings.clock_skew_seconds)

    def validate(
        self,
        raw_response: str | bytes,
        expected_request: AuthnRequestContext | None = None,
    ) -> Identity:
        """Validate a Response and return the asserted identity.

        Args:
            raw_response: The base64 ``SAMLResponse`` POST parameter.
            expected_request: The AuthnRequest this Response must answer.
                When omitted, InResponseTo is looked up in the request store.

        Returns:
            The authenticated Identity.

        Raises:
            ValidationError: A subclass naming the failed stage.
        """
        return self.validate_response(raw_response, expected_request).identity

    def validate_response(
        self,
        raw_response: str | bytes,
        expected_request: AuthnRequestContext | None = None,
    ) -> ValidatedResponse:
        """Like validate(), but also return the consumed request context."""
        message = SAMLMessage(
            message_id="(unparsed)",
            kind="Response",
            direction=Direction.INBOUND,
            binding=BINDING_HTTP_POST,
        )
        try:
            result = self._validate(raw_response, expected_request, message)
        except ValidationError as e:
            message.error = str(e)
            self._log(message)
            raise
        self._log(message)
        return result

    def _log(self, message: SAMLMessage) -> None:
        (self._protocol_logger or get_protocol_logger()).log_message(message)

    def _validate(
        self,
        raw_response: str | bytes,
        expected_request: AuthnRequestContext | None,
        message: SAMLMessage,
    ) -> ValidatedResponse:
        now = self._clock()

        # Well-formedness
        xml_bytes = decode_response(raw_response)
        message.xml = xml_bytes.decode("utf-8", errors="replace")
        try:
            root = parse_xml(xml_bytes)
        except UnsafeXMLError as e:
            raise MalformedResponse(str(e)) from e

        self._check_shape(root)
        message.message_id = root.get("ID", "")
        message.in_response_to = root.get("InResponseTo")
        message.destination = root.get("Destination")

        # Signature
        signed_response, assertion_elem = self._verify(root)
        response = SAMLResponse.from_element(signed_response if signed_response is not None else root)
        assertion = SAMLAssertion.from_element(assertion_elem)
        message.issuer = assertion.issuer

        # Status
        if not response.is_success:
            raise _status_error(response)

        self._check_issuer(response, assertion)
        self._check_audience(response, assertion)
        self._check_validity(assertion, now)

        # Claims
        try:
            identity = build_identity(
                assertion.attributes,
                self.mapping,
                name_id=assertion.subject_name_id,
                name_id_format=assertion.subject_name_id_format,
            )
        except MissingClaimError as e:
            raise MissingAttribute(str(e)) from e

        self._check_replay(assertion, now)
        request = self._correlate(response, assertion, expected_request, now)

        logger.info(
            "Accepted assertion %s from %s for %s",
            assertion.assertion_id,
            assertion.issuer,
            identity.display_name,
        )
        return ValidatedResponse(
            identity=identity,
            request=request,
            assertion_id=assertion.assertion_id,
            session_index=assertion.session_index,
        )

    def _check_shape(self, root: etree._Element) -> None:
        if root.tag != RESPONSE_TAG:
            raise MalformedResponse(f"Root element is {root.tag}, not samlp:Response")
        if not root.get("ID"):
            raise MalformedResponse("Response has no ID")

        assertions = list(root.iter(ASSERTION_TAG, ENCRYPTED_ASSERTION_TAG))
        if not assertions:
            # A failure status legitimately carries no assertion
            response = SAMLResponse.from_element(root)
            if response.status_code and not response.is_success:
                raise _status_error(response)
            raise MalformedResponse("Response contains no assertion")
        if len(assertions) > 1:
            raise MalformedResponse("Response must contain exactly one assertion")
        if assertions[0].getparent() is not root:
            raise MalformedResponse("Assertion is not a direct child of the Response")

    def _decrypt(self, encrypted: etree._Element) -> etree._Element:
        try:
            return decrypt_assertion(encrypted, self.credentials.decryption_key)
        except DecryptionError as e:
            raise DecryptionFailed(str(e)) from e

    def _verify(self, root: etree._Element) -> tuple[etree._Element | None, etree._Element]:
        """Verify the signature and locate the assertion inside the signed data.

        Returns:
            (signed Response or None, Assertion element taken from signed data)
        """
        encrypted = root.find(ENCRYPTED_ASSERTION_TAG)
        if encrypted is not None and find_signature(root) is None:
            # The assertion signature is inside the ciphertext
            root.replace(encrypted, self._decrypt(encrypted))

        try:
            verified = verify_signature(root, self.credentials.idp_certificate_pem)
        except SignatureVerificationError as e:
            raise SignatureInvalid(str(e)) from e

        if verified.location == SignatureLocation.ASSERTION:
            assertion = verified.signed_element
            expected = root.find(ASSERTION_TAG)
            if expected is None or expected.get("ID") != assertion.get("ID"):
                raise SignatureInvalid("Signed assertion is not the assertion in the Response")
            return None, assertion

        signed_response = verified.signed_element
        assertion = signed_response.find(ASSERTION_TAG)
        if assertion is None:
            encrypted = signed_response.find(ENCRYPTED_ASSERTION_TAG)
            if encrypted is None:
                raise SignatureInvalid("Signed Response contains no assertion")
            assertion = self._decrypt(encrypted)
        return signed_response, assertion

    def _check_issuer(self, response: SAMLResponse, assertion: SAMLAssertion) -> None:
        expected = self.settings.idp_issuer
        if assertion.issuer != expected:
            raise IssuerMismatch(f"Assertion issuer {assertion.issuer!r} is not {expected!r}")
        if response.issuer is not None and response.issuer != expected:
            raise IssuerMismatch(f"Response issuer {response.issuer!r} is not {expected!r}")

    def _check_audience(self, response: SAMLResponse, assertion: SAMLAssertion) -> None:
        if not assertion.has_audience_restriction:
            raise AudienceMismatch("Assertion has no AudienceRestriction")
        if self.settings.issuer not in assertion.audience_restrictions:
            raise AudienceMismatch(
                f"Audience {assertion.audience_restrictions} does not include {self.settings.issuer!r}"
            )
        if assertion.confirmation_method != SUBJECT_CONFIRMATION_BEARER:
            raise AudienceMismatch("Assertion has no bearer subject confirmation")
        if (
            assertion.confirmation_recipient is not None
            and assertion.confirmation_recipient != self.settings.callback_url
        ):
            raise AudienceMismatch(
                f"Recipient {assertion.confirmation_recipient!r} is not {self.settings.callback_url!r}"
            )
        if response.destination is not None and response.destination != self.settings.callback_url:
            raise AudienceMismatch(
                f"Destination {response.destination!r} is not {self.settings.callback_url!r}"
            )

    def _instant(self, value: str | None, name: str) -> datetime | None:
        if value is None:
            return None
        try:
            return parse_instant(value)
        except ValueError as e:
            raise MalformedResponse(f"Invalid {name}: {e}") from e

    def _check_validity(self, assertion: SAMLAssertion, now: datetime) -> None:
        skew = self.skew

        not_before = self._instant(assertion.conditions_not_before, "NotBefore")
        if not_before is not None and now + skew < not_before:
            raise Expired(f"Assertion not valid before {assertion.conditions_not_before}")

        for value, name in (
            (assertion.conditions_not_on_or_after, "Conditions NotOnOrAfter"),
            (assertion.confirmation_not_on_or_after, "SubjectConfirmationData NotOnOrAfter"),
        ):
            not_on_or_after = self._instant(value, name)
            if not_on_or_after is not None and now - skew >= not_on_or_after:
                raise Expired(f"Assertion expired at {value} ({name})")

    def _check_replay(self, assertion: SAMLAssertion, now: datetime) -> None:
        if not assertion.assertion_id:
            raise MalformedResponse("Assertion has no ID")

        deadlines = [
            instant
            for instant in (
                self._instant(assertion.conditions_not_on_or_after, "NotOnOrAfter"),
                self._instant(assertion.confirmation_not_on_or_after, "NotOnOrAfter"),
            )
            if instant is not None
        ]
        if deadlines:
            expires_at = max(deadlines) + self.skew
        else:
            expires_at = now + timedelta(seconds=self.settings.replay_window_seconds)

        if not self.replay_cache.add(assertion.assertion_id, expires_at, now):
            raise Replayed(f"Assertion {assertion.assertion_id} was already used")

    def _correlate(
        self,
        response: SAMLResponse,
        assertion: SAMLAssertion,
        expected_request: AuthnRequestContext | None,
        now: datetime,
    ) -> AuthnRequestContext | None:
        in_response_to = assertion.confirmation_in_response_to or response.in_response_to
        if (
            assertion.confirmation_in_response_to
            and response.in_response_to
            and assertion.confirmation_in_response_to != response.in_response_to
        ):
            raise Expired("Response and assertion answer different requests")

        if not in_response_to:
            if self.settings.allow_unsolicited:
                logger.info("Accepting unsolicited response %s", response.response_id)
                return None
            raise Expired("Unsolicited response")

        if expected_request is not None:
            if expected_request.request_id != in_response_to:
                raise Expired(f"Response answers {in_response_to}, not {expected_request.request_id}")
            if expected_request.is_expired(now):
                raise Expired(f"Request {in_response_to} has expired")
            if (
                self.request_store is not None
                and self.request_store.get(in_response_to, now) is not None
                and not self.request_store.consume(in_response_to, now)
            ):
                raise Replayed(f"Request {in_response_to} was already answered")
            self._claim_request(expected_request, now)
            return expected_request

        if self.request_store is None:
            raise Expired(f"Unknown request {in_response_to}")

        context = self.request_store.get(in_response_to, now)
        if context is None:
            raise Expired(f"Unknown or expired request {in_response_to}")
        if not self.request_store.consume(in_response_to, now):
            raise Replayed(f"Request {in_response_to} was already answered")
        self._claim_request(context, now)
        return context

    def _claim_request(self, context: AuthnRequestContext, now: datetime) -> None:
        """Record that a request has been answered, whoever holds its context.

        XML IDs cannot contain a colon, so the key never collides with an
        assertion ID.
        """
        key = f"request:{context.request_id}"
        if not self.replay_cache.add(key, context.expires_at, now):
            raise Replayed(f"Request {context.request_id} was already answered")


__all__ = [
    "AssertionValidator",
    "AudienceMismatch",
    "DecryptionFailed",
    "Expired",
    "IssuerMismatch",
    "MalformedResponse",
    "MissingAttribute",
    "Replayed",
    "SignatureInvalid",
    "StatusError",
    "ValidatedResponse",
    "ValidationError",
    "ValidationStage",
    "decode_response",
]
