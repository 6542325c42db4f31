"""Tests for SAML Response validation."""

import base64
from datetime import timedelta

import pytest
from lxml import etree

from samlsp.core.saml import (
    AssertionValidator,
    AudienceMismatch,
    AuthnRequestContext,
    DecryptionFailed,
    Expired,
    IssuerMismatch,
    MalformedResponse,
    MissingAttribute,
    Replayed,
    SignatureInvalid,
    StatusError,
    ValidationStage,
)
from samlsp.core.saml.validator import MAX_RESPONSE_BYTES, decode_response

from .idp import (
    DS_NS,
    SAML_NS,
    STATUS_REQUESTER,
    XENC11_NS,
    XENC_NS,
    decode,
    encode,
)


@pytest.fixture
def validator(config, credentials, stores, clock) -> AssertionValidator:
    return AssertionValidator(
        config.saml,
        credentials,
        replay_cache=stores.replay,
        request_store=stores.requests,
        clock=clock,
    )


@pytest.fixture
def pending(stores, clock) -> AuthnRequestContext:
    """An outstanding AuthnRequest the IdP is answering."""
    context = AuthnRequestContext(
        request_id="_4f1c0a3e9b7d2e6f8a5c1b0d9e3f7a2c",
        issued_at=clock(),
        expires_at=clock() + timedelta(hours=1),
        return_to="/reports",
    )
    stores.requests.put(context)
    return context


class TestAcceptedResponses:
    """Responses that must be accepted."""

    def test_signed_assertion(self, validator, idp, pending) -> None:
        """A signed assertion yields the mapped identity."""
        identity = validator.validate(idp.response(pending.request_id))

        assert identity.given_name == "Ada"
        assert identity.family_name == "Lovelace"
        assert identity.email == "ada@example.edu"
        assert identity.is_student is True
        assert identity.name_id == "ada@example.edu"

    def test_signed_response_only(self, validator, idp, pending) -> None:
        """A signature on the Response covers the assertion inside it."""
        raw = idp.response(pending.request_id, sign_assertion=False, sign_response=True)
        assert validator.validate(raw).given_name == "Ada"

    def test_both_signed(self, validator, idp, pending) -> None:
        """Response and assertion may both be signed."""
        raw = idp.response(pending.request_id, sign_response=True)
        assert validator.validate(raw).family_name == "Lovelace"

    def test_returns_request_context(self, validator, idp, pending) -> None:
        """The consumed request travels back with the result."""
        result = validator.validate_response(idp.response(pending.request_id))

        assert result.request == pending
        assert result.request.return_to == "/reports"
        assert result.assertion_id.startswith("_")
        assert result.session_index is not None

    def test_consumes_pending_request(self, validator, idp, pending, stores, clock) -> None:
        """A pending request can be answered only once."""
        validator.validate(idp.response(pending.request_id))
        assert stores.requests.get(pending.request_id, clock()) is None

    def test_explicit_expected_request(self, config, credentials, stores, clock, idp) -> None:
        """A caller-supplied request context replaces the store lookup."""
        validator = AssertionValidator(config.saml, credentials, stores.replay, clock=clock)
        context = AuthnRequestContext(
            request_id="_expected",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )

        identity = validator.validate(idp.response("_expected"), expected_request=context)
        assert identity.email == "ada@example.edu"

    def test_expected_request_answered_once(self, config, credentials, stores, clock, idp) -> None:
        """A caller-supplied context accepts one Response, and the store copy is consumed."""
        validator = AssertionValidator(
            config.saml,
            credentials,
            stores.replay,
            request_store=stores.requests,
            clock=clock,
        )
        context = AuthnRequestContext(
            request_id="_abc",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )
        stores.requests.put(context)

        validator.validate(idp.response("_abc"), expected_request=context)
        assert stores.requests.get("_abc", clock()) is None

        with pytest.raises(Replayed):
            validator.validate(idp.response("_abc"), expected_request=context)
        with pytest.raises(Expired):
            validator.validate(idp.response("_abc"))

    def test_expected_request_without_store(self, config, credentials, stores, clock, idp) -> None:
        validator = AssertionValidator(config.saml, credentials, stores.replay, clock=clock)
        context = AuthnRequestContext(
            request_id="_solo",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )
        validator.validate(idp.response("_solo"), expected_request=context)

        with pytest.raises(Replayed):
            validator.validate(idp.response("_solo"), expected_request=context)

    def test_stored_request_not_reusable_as_expected(self, validator, idp, pending) -> None:
        """A request answered through the store cannot be answered again by context."""
        validator.validate(idp.response(pending.request_id))

        with pytest.raises(Replayed):
            validator.validate(idp.response(pending.request_id), expected_request=pending)

    def test_email_falls_back_to_name_id(self, validator, idp, pending) -> None:
        """An emailAddress NameID stands in for a missing email attribute."""
        raw = idp.response(
            pending.request_id,
            attributes={"FirstName": ["Ada"], "LastName": ["Lovelace"]},
            name_id="ada.l@example.edu",
        )
        identity = validator.validate(raw)

        assert identity.email == "ada.l@example.edu"
        assert identity.is_student is False

    def test_unsolicited_when_allowed(self, config, validator, idp) -> None:
        """IdP-initiated responses pass only when enabled."""
        config.saml.allow_unsolicited = True
        assert validator.validate(idp.response(None)).given_name == "Ada"


class TestSignature:
    """Signature verification."""

    def test_unsigned_rejected(self, validator, idp, pending) -> None:
        """A Response with no signature anywhere is rejected."""
        raw = idp.response(pending.request_id, sign_assertion=False)

        with pytest.raises(SignatureInvalid) as exc_info:
            validator.validate(raw)
        assert exc_info.value.stage == ValidationStage.SIGNATURE

    def test_untrusted_key_rejected(self, validator, idp, pending, rogue_keys) -> None:
        """A signature by any key but the IdP's is rejected."""
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id), keys=rogue_keys)
        raw = encode(idp.build_response(assertion, pending.request_id))

        with pytest.raises(SignatureInvalid):
            validator.validate(raw)

    def test_tampered_attribute_rejected(self, validator, idp, pending) -> None:
        """Editing signed content breaks the digest."""
        xml = decode(idp.response(pending.request_id))
        assert b">Ada<" in xml
        tampered = xml.replace(b">Ada<", b">Eve<")

        with pytest.raises(SignatureInvalid):
            validator.validate(encode(tampered))

    def test_flipped_signature_value_rejected(self, validator, idp, pending) -> None:
        """A single flipped bit in SignatureValue is detected."""
        doc = etree.fromstring(decode(idp.response(pending.request_id)))
        value = doc.find(f".//{{{DS_NS}}}SignatureValue")
        signature = bytearray(base64.b64decode("".join(value.text.split())))
        signature[10] ^= 0x01
        value.text = base64.b64encode(bytes(signature)).decode("ascii")

        with pytest.raises(SignatureInvalid):
            validator.validate(encode(doc))

    def test_rejected_response_keeps_request_pending(
        self, validator, idp, pending, stores, clock
    ) -> None:
        """A forged response does not consume the AuthnRequest."""
        with pytest.raises(SignatureInvalid):
            validator.validate(idp.response(pending.request_id, sign_assertion=False))

        assert stores.requests.get(pending.request_id, clock()) == pending


class TestSignatureWrapping:
    """The identity must come from the signed assertion only."""

    def test_injected_second_assertion_rejected(self, validator, idp, pending) -> None:
        """An extra unsigned assertion next to a signed one is rejected."""
        doc = etree.fromstring(decode(idp.response(pending.request_id)))
        evil = idp.build_assertion(pending.request_id, attributes={
            "FirstName": ["Mallory"], "LastName": ["Evil"], "email": ["m@evil.example"],
        })
        doc.append(evil)

        with pytest.raises(MalformedResponse):
            validator.validate(encode(doc))

    def test_signed_assertion_moved_into_extensions(self, validator, idp, pending) -> None:
        """Hiding the signed assertion below another element is rejected."""
        doc = etree.fromstring(decode(idp.response(pending.request_id)))
        signed = doc.find(f"{{{SAML_NS}}}Assertion")
        extensions = etree.SubElement(doc, "{urn:oasis:names:tc:SAML:2.0:protocol}Extensions")
        extensions.append(signed)

        with pytest.raises(MalformedResponse):
            validator.validate(encode(doc))

    def test_signed_assertion_swapped_for_unsigned(self, validator, idp, pending) -> None:
        """Replacing the signed assertion with another breaks verification."""
        doc = etree.fromstring(decode(idp.response(pending.request_id)))
        signed = doc.find(f"{{{SAML_NS}}}Assertion")
        evil = idp.build_assertion(pending.request_id, assertion_id=signed.get("ID"), attributes={
            "FirstName": ["Mallory"], "LastName": ["Evil"], "email": ["m@evil.example"],
        })
        # Keep the original signature so only the content differs
        evil.insert(1, signed.find(f"{{{DS_NS}}}Signature"))
        doc.replace(signed, evil)

        with pytest.raises(SignatureInvalid):
            validator.validate(encode(doc))


class TestStatus:
    """Non-success status codes."""

    def test_failure_status_without_assertion(self, validator, idp, pending) -> None:
        """An IdP error is reported as a status failure."""
        response = idp.build_response(
            None,
            pending.request_id,
            status=STATUS_REQUESTER,
            status_message="User cancelled",
        )

        with pytest.raises(StatusError) as exc_info:
            validator.validate(encode(response))
        assert "User cancelled" in str(exc_info.value)

    def test_signed_failure_status_with_assertion(self, validator, idp, pending) -> None:
        """A failure status wins even when a valid assertion is present."""
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        response = idp.build_response(assertion, pending.request_id, status=STATUS_REQUESTER)

        with pytest.raises(StatusError):
            validator.validate(encode(response))


class TestIssuerAndAudience:
    """Issuer, audience and recipient checks."""

    def test_wrong_assertion_issuer(self, validator, idp, pending) -> None:
        raw = idp.response(pending.request_id, issuer="https://idp.evil.example/idp/shibboleth")
        with pytest.raises(IssuerMismatch):
            validator.validate(raw)

    def test_wrong_response_issuer(self, validator, idp, pending) -> None:
        raw = idp.response(
            pending.request_id,
            response_kwargs={"issuer": "https://idp.evil.example/idp/shibboleth"},
        )
        with pytest.raises(IssuerMismatch):
            validator.validate(raw)

    def test_other_audience(self, validator, idp, pending) -> None:
        """An assertion for another SP is rejected."""
        raw = idp.response(pending.request_id, audience="https://other-sp.example.edu/shibboleth")
        with pytest.raises(AudienceMismatch):
            validator.validate(raw)

    def test_missing_audience(self, validator, idp, pending) -> None:
        raw = idp.response(pending.request_id, audience=None)
        with pytest.raises(AudienceMismatch, match="no AudienceRestriction"):
            validator.validate(raw)

    def test_wrong_recipient(self, validator, idp, pending) -> None:
        raw = idp.response(pending.request_id, recipient="https://other-sp.example.edu/acs")
        with pytest.raises(AudienceMismatch):
            validator.validate(raw)

    def test_wrong_destination(self, validator, idp, pending) -> None:
        raw = idp.response(
            pending.request_id,
            response_kwargs={"destination": "https://other-sp.example.edu/acs"},
        )
        with pytest.raises(AudienceMismatch):
            validator.validate(raw)


class TestValidityWindow:
    """NotBefore / NotOnOrAfter with clock skew."""

    def test_expired_assertion(self, validator, idp, pending, clock) -> None:
        """Past NotOnOrAfter plus the tolerated skew is rejected."""
        raw = idp.response(pending.request_id)
        clock.advance(300 + 180)

        with pytest.raises(Expired) as exc_info:
            validator.validate(raw)
        assert exc_info.value.stage == ValidationStage.EXPIRED

    def test_expiry_within_skew(self, validator, idp, pending, clock) -> None:
        """Slightly late delivery is tolerated."""
        raw = idp.response(pending.request_id)
        clock.advance(300 + 170)
        assert validator.validate(raw).given_name == "Ada"

    def test_subject_confirmation_expired(self, validator, idp, pending, clock) -> None:
        raw = idp.response(
            pending.request_id,
            confirmation_not_on_or_after=clock() - timedelta(minutes=5),
        )
        with pytest.raises(Expired):
            validator.validate(raw)

    def test_not_yet_valid(self, validator, idp, pending, clock) -> None:
        """An assertion from the future is rejected."""
        raw = idp.response(pending.request_id, not_before=clock() + timedelta(minutes=10))
        with pytest.raises(Expired):
            validator.validate(raw)

    def test_not_before_within_skew(self, validator, idp, pending, clock) -> None:
        """An IdP clock slightly ahead is tolerated."""
        raw = idp.response(pending.request_id, not_before=clock() + timedelta(minutes=2))
        assert validator.validate(raw).given_name == "Ada"


class TestReplayAndCorrelation:
    """Assertion replay and InResponseTo correlation."""

    def test_replayed_response(self, validator, idp, pending) -> None:
        """Posting the same Response twice fails the second time."""
        raw = idp.response(pending.request_id)
        validator.validate(raw)

        with pytest.raises(Replayed):
            validator.validate(raw)

    def test_rejected_response_does_not_burn_assertion_id(self, validator, idp, pending) -> None:
        """Only accepted assertions enter the replay cache."""
        with pytest.raises(AudienceMismatch):
            validator.validate(
                idp.response(pending.request_id, assertion_id="_fixed", audience="https://other")
            )

        assert validator.validate(idp.response(pending.request_id, assertion_id="_fixed"))

    def test_request_answered_twice(self, validator, idp, pending) -> None:
        """A second, distinct assertion for the same request is rejected."""
        validator.validate(idp.response(pending.request_id))

        with pytest.raises(Expired):
            validator.validate(idp.response(pending.request_id))

    def test_unsolicited_rejected(self, validator, idp) -> None:
        with pytest.raises(Expired):
            validator.validate(idp.response(None))

    def test_unknown_request(self, validator, idp, pending) -> None:
        with pytest.raises(Expired):
            validator.validate(idp.response("_never_sent"))

    def test_expired_request(self, validator, idp, stores, clock) -> None:
        """A request older than its TTL cannot be answered."""
        context = AuthnRequestContext(
            request_id="_short",
            issued_at=clock(),
            expires_at=clock() + timedelta(seconds=60),
        )
        stores.requests.put(context)
        raw = idp.response("_short")
        clock.advance(61)

        with pytest.raises(Expired):
            validator.validate(raw)

    def test_mismatched_in_response_to(self, validator, idp, pending) -> None:
        """Response and assertion must answer the same request."""
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        response = idp.build_response(assertion, "_another_request")

        with pytest.raises(Expired):
            validator.validate(encode(response))


class TestEncryptedAssertion:
    """EncryptedAssertion handling."""

    def test_aes_cbc(self, validator, idp, pending) -> None:
        raw = idp.response(pending.request_id, encrypt=True)
        assert validator.validate(raw).given_name == "Ada"

    @pytest.mark.parametrize("block", [f"{XENC11_NS}aes128-gcm", f"{XENC11_NS}aes256-gcm"])
    def test_aes_gcm(self, validator, idp, pending, block) -> None:
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        encrypted = idp.encrypt_assertion(assertion, block_algorithm=block)
        raw = encode(idp.build_response(encrypted, pending.request_id))

        assert validator.validate(raw).email == "ada@example.edu"

    def test_encrypted_key_as_sibling(self, validator, idp, pending) -> None:
        """EncryptedKey may follow EncryptedData instead of sitting in KeyInfo."""
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        encrypted = idp.encrypt_assertion(assertion, key_inside_data=False)
        raw = encode(idp.build_response(encrypted, pending.request_id))

        assert validator.validate(raw).family_name == "Lovelace"

    def test_signed_response_with_encrypted_assertion(self, validator, idp, pending) -> None:
        raw = idp.response(
            pending.request_id,
            sign_assertion=False,
            sign_response=True,
            encrypt=True,
        )
        assert validator.validate(raw).given_name == "Ada"

    def test_rsa_1_5_refused(self, validator, idp, pending) -> None:
        """PKCS#1 v1.5 key transport is never accepted."""
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        encrypted = idp.encrypt_assertion(assertion, key_transport=f"{XENC_NS}rsa-1_5")
        raw = encode(idp.build_response(encrypted, pending.request_id))

        with pytest.raises(DecryptionFailed) as exc_info:
            validator.validate(raw)
        assert exc_info.value.stage == ValidationStage.DECRYPTION

    def test_corrupted_ciphertext(self, validator, idp, pending) -> None:
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        encrypted = idp.encrypt_assertion(assertion, block_algorithm=f"{XENC11_NS}aes128-gcm")
        value = encrypted.find(f"{{{XENC_NS}}}EncryptedData/{{{XENC_NS}}}CipherData/{{{XENC_NS}}}CipherValue")
        data = bytearray(base64.b64decode(value.text))
        data[-1] ^= 0xFF
        value.text = base64.b64encode(bytes(data)).decode("ascii")
        raw = encode(idp.build_response(encrypted, pending.request_id))

        with pytest.raises(DecryptionFailed):
            validator.validate(raw)

    def test_encrypted_unsigned_assertion_rejected(self, validator, idp, pending) -> None:
        """Encryption is not a substitute for a signature."""
        raw = idp.response(pending.request_id, sign_assertion=False, encrypt=True)
        with pytest.raises(SignatureInvalid):
            validator.validate(raw)


class TestClaims:
    """Attribute mapping failures."""

    def test_missing_required_attribute(self, validator, idp, pending, stores) -> None:
        raw = idp.response(
            pending.request_id,
            attributes={"FirstName": ["Ada"], "email": ["ada@example.edu"]},
        )

        with pytest.raises(MissingAttribute) as exc_info:
            validator.validate(raw)
        assert "family_name" in str(exc_info.value)
        assert len(stores.replay) == 0


class TestMalformed:
    """Input that is not a SAML Response at all."""

    def test_empty(self, validator) -> None:
        with pytest.raises(MalformedResponse):
            validator.validate("")

    def test_not_base64(self, validator) -> None:
        with pytest.raises(MalformedResponse):
            validator.validate("this is not base64!!")

    def test_not_xml(self, validator) -> None:
        with pytest.raises(MalformedResponse):
            validator.validate(encode(b"plain text, not xml"))

    def test_oversized(self) -> None:
        with pytest.raises(MalformedResponse):
            decode_response("A" * (MAX_RESPONSE_BYTES + 4))

    def test_wrong_root_element(self, validator, idp, pending) -> None:
        assertion = idp.sign_assertion(idp.build_assertion(pending.request_id))
        with pytest.raises(MalformedResponse):
            validator.validate(encode(assertion))

    def test_doctype_rejected(self, validator) -> None:
        """DTDs and entity declarations are refused before parsing further."""
        xml = (
            b'<?xml version="1.0"?>'
            b'<!DOCTYPE r [<!ENTITY x "expanded">]>'
            b'<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" ID="_1">'
            b"&x;</samlp:Response>"
        )
        with pytest.raises(MalformedResponse):
            validator.validate(encode(xml))

    def test_no_assertion(self, validator, idp, pending) -> None:
        with pytest.raises(MalformedResponse):
            validator.validate(encode(idp.build_response(None, pending.request_id)))
