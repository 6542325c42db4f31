"""Tests for claim mapping."""

import pytest

from samlsp.core.config import ClaimSettings
from samlsp.core.identity import (
    NAMEID_FORMAT_EMAIL,
    ClaimMapping,
    Identity,
    MissingClaimError,
    build_identity,
    has_role_marker,
)

AFFILIATION = "urn:oid:1.3.6.1.4.1.5923.1.1.1.1"

ATTRIBUTES = {
    "FirstName": ["Ada"],
    "LastName": ["Lovelace"],
    "email": ["ada@example.edu"],
    AFFILIATION: ["member", "Student"],
}


def test_build_identity() -> None:
    identity = build_identity(ATTRIBUTES, ClaimMapping())

    assert identity == Identity(
        given_name="Ada",
        family_name="Lovelace",
        email="ada@example.edu",
        is_student=True,
    )
    assert identity.display_name == "Ada Lovelace"


def test_attribute_priority() -> None:
    """Test that earlier attribute names win."""
    attributes = {**ATTRIBUTES, "givenName": ["Augusta"]}
    assert build_identity(attributes, ClaimMapping()).given_name == "Ada"

    del attributes["FirstName"]
    assert build_identity(attributes, ClaimMapping()).given_name == "Augusta"


def test_oid_attribute_names() -> None:
    attributes = {
        "urn:oid:2.5.4.42": ["Ada"],
        "urn:oid:2.5.4.4": ["Lovelace"],
        "urn:oid:0.9.2342.19200300.100.1.3": ["ada@example.edu"],
    }
    identity = build_identity(attributes, ClaimMapping())
    assert identity.family_name == "Lovelace"
    assert identity.is_student is False


def test_blank_values_skipped() -> None:
    attributes = {**ATTRIBUTES, "FirstName": ["  ", ""], "givenName": [" Ada "]}
    assert build_identity(attributes, ClaimMapping()).given_name == "Ada"


def test_missing_required_claim() -> None:
    attributes = {k: v for k, v in ATTRIBUTES.items() if k != "LastName"}

    with pytest.raises(MissingClaimError) as exc_info:
        build_identity(attributes, ClaimMapping())
    assert exc_info.value.field_name == "family_name"
    assert "LastName" in exc_info.value.candidates


def test_optional_claim_defaults_to_empty() -> None:
    mapping = ClaimMapping(required=frozenset({"given_name", "email"}))
    attributes = {k: v for k, v in ATTRIBUTES.items() if k != "LastName"}

    assert build_identity(attributes, mapping).family_name == ""


def test_email_from_name_id() -> None:
    attributes = {k: v for k, v in ATTRIBUTES.items() if k != "email"}
    identity = build_identity(
        attributes,
        ClaimMapping(),
        name_id="ada@example.edu",
        name_id_format=NAMEID_FORMAT_EMAIL,
    )
    assert identity.email == "ada@example.edu"


def test_transient_name_id_not_used_as_email() -> None:
    attributes = {k: v for k, v in ATTRIBUTES.items() if k != "email"}
    with pytest.raises(MissingClaimError):
        build_identity(
            attributes,
            ClaimMapping(),
            name_id="_a7c3e1",
            name_id_format="urn:oasis:names:tc:SAML:2.0:nameid-format:transient",
        )


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        (["Student"], True),
        (["student"], True),
        (["student@example.edu"], True),
        (["member", "STUDENT"], True),
        (["staff", "member"], False),
        (["students"], False),
        ([], False),
    ],
)
def test_has_role_marker(values: list[str], expected: bool) -> None:
    assert has_role_marker(values, "Student") is expected


def test_mapping_from_settings() -> None:
    settings = ClaimSettings(given_name=["displayName"], role_marker="faculty")
    mapping = ClaimMapping.from_settings(settings)

    identity = build_identity(
        {**ATTRIBUTES, "displayName": ["Countess"], AFFILIATION: ["Faculty"]},
        mapping,
    )
    assert identity.given_name == "Countess"
    assert identity.is_student is True


def test_mapping_rejects_unknown_required_field() -> None:
    with pytest.raises(ValueError):
        ClaimMapping.from_settings(ClaimSettings(required=["given_name", "phone"]))


def test_identity_round_trip() -> None:
    identity = Identity("Ada", "Lovelace", "ada@example.edu", True, "ada@example.edu")
    assert Identity.from_dict(identity.to_dict()) == identity
