"""Tests for SAML message building and parsing."""

from datetime import UTC, datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from lxml import etree

from samlsp.core.saml.sp import (
    SAMLAssertion,
    SAMLResponse,
    SAMLServiceProvider,
    format_instant,
)
from samlsp.core.saml.utils import parse_instant

from .idp import IDP_ENTITY_ID, SP_CALLBACK_URL, SP_ENTITY_ID, decode_redirect

NOW = datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC)


@pytest.fixture
def sp(config, credentials) -> SAMLServiceProvider:
    return SAMLServiceProvider(config.saml, credentials)


def test_authn_request(sp: SAMLServiceProvider) -> None:
    request = sp.create_authn_request(NOW)

    assert request.id.startswith("_")
    assert len(request.id) == 33
    assert request.issue_instant == "2024-03-01T09:00:00Z"
    assert request.issuer == SP_ENTITY_ID
    assert request.acs_url == SP_CALLBACK_URL


def test_authn_request_escapes_urls(sp: SAMLServiceProvider, config) -> None:
    config.saml.callback_url = "https://sp.example.edu/acs?a=1&b=2"
    xml = sp.create_authn_request(NOW).to_xml()

    root = etree.fromstring(xml.encode("utf-8"))
    assert root.get("AssertionConsumerServiceURL") == "https://sp.example.edu/acs?a=1&b=2"


def test_redirect_encoding_round_trip(sp: SAMLServiceProvider) -> None:
    request = sp.create_authn_request(NOW)
    assert decode_redirect(request.encode_redirect()) == request.to_xml()


def test_request_context(sp: SAMLServiceProvider) -> None:
    request = sp.create_authn_request(NOW)
    context = sp.create_request_context(request, "/reports", NOW)

    assert context.request_id == request.id
    assert context.expires_at == NOW + timedelta(seconds=300)
    assert not context.is_expired(NOW + timedelta(seconds=299))
    assert context.is_expired(NOW + timedelta(seconds=300))


def test_redirect_url_keeps_entry_point_parameters(sp: SAMLServiceProvider, config) -> None:
    config.saml.entry_point = "https://idp.example.edu/sso?tenant=campus"
    url = sp.build_sso_redirect_url(sp.create_authn_request(NOW), relay_state="/reports")

    query = parse_qs(urlparse(url).query)
    assert query["tenant"] == ["campus"]
    assert query["RelayState"] == ["/reports"]
    assert list(query)[-1] == "Signature"


def test_redirect_url_requires_entry_point(sp: SAMLServiceProvider, config) -> None:
    config.saml.entry_point = ""
    with pytest.raises(ValueError):
        sp.build_sso_redirect_url(sp.create_authn_request(NOW))


def test_parse_assertion(idp) -> None:
    assertion = SAMLAssertion.from_element(idp.build_assertion("_q1"))

    assert assertion.issuer == IDP_ENTITY_ID
    assert assertion.subject_name_id == "ada@example.edu"
    assert assertion.audience_restrictions == [SP_ENTITY_ID]
    assert assertion.confirmation_in_response_to == "_q1"
    assert assertion.confirmation_recipient == SP_CALLBACK_URL
    assert assertion.attributes["FirstName"] == ["Ada"]


def test_attributes_indexed_by_friendly_name() -> None:
    elem = etree.fromstring(
        b'<saml:Assertion xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" ID="_a">'
        b"<saml:AttributeStatement>"
        b'<saml:Attribute Name="urn:oid:2.5.4.42" FriendlyName="givenName">'
        b"<saml:AttributeValue>Ada</saml:AttributeValue>"
        b"</saml:Attribute>"
        b"</saml:AttributeStatement>"
        b"</saml:Assertion>"
    )
    assertion = SAMLAssertion.from_element(elem)

    assert assertion.attributes["urn:oid:2.5.4.42"] == ["Ada"]
    assert assertion.attributes["givenName"] == ["Ada"]
    assert assertion.has_audience_restriction is False


def test_parse_response_status(idp) -> None:
    response = SAMLResponse.from_element(
        idp.build_response(
            None,
            "_q1",
            status="urn:oasis:names:tc:SAML:2.0:status:Responder",
            status_message="Upstream failure",
        )
    )

    assert not response.is_success
    assert response.in_response_to == "_q1"
    assert response.status_message == "Upstream failure"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2024-03-01T09:00:00Z", NOW),
        ("2024-03-01T09:00:00", NOW),
        ("2024-03-01T10:00:00+01:00", NOW),
        ("2024-03-01T09:00:00.123456789Z", NOW.replace(microsecond=123456)),
        ("2024-03-01T09:00:00.5Z", NOW.replace(microsecond=500000)),
    ],
)
def test_parse_instant(value: str, expected: datetime) -> None:
    assert parse_instant(value) == expected


@pytest.mark.parametrize("value", ["yesterday", "2024-03-01", "2024-03-01 09:00:00Z", ""])
def test_parse_instant_invalid(value: str) -> None:
    with pytest.raises(ValueError):
        parse_instant(value)


def test_format_instant() -> None:
    local = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone(timedelta(hours=1)))
    assert format_instant(local) == "2024-03-01T09:00:00Z"
