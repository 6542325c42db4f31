"""Authenticated principal and the claim mapping that produces it."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from samlsp.core.config import ClaimSettings

NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

IDENTITY_FIELDS = ("given_name", "family_name", "email")


class MissingClaimError(ValueError):
    """Raised when a required attribute is absent from a validated assertion."""

    def __init__(self, field_name: str, candidates: Sequence[str]) -> None:
        self.field_name = field_name
        self.candidates = list(candidates)
        super().__init__(
            f"Required claim '{field_name}' not found (looked for: {', '.join(candidates)})"
        )


@dataclass(frozen=True)
class Identity:
    """An authenticated principal.

    Only built by the assertion validator after every check has passed.
    """

    given_name: str
    family_name: str
    email: str
    is_student: bool = False
    name_id: str | None = None

    @property
    def display_name(self) -> str:
        """Name as shown to the user."""
        return f"{self.given_name} {self.family_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistent session stores."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Identity:
        """Reconstruct an Identity stored by to_dict()."""
        return cls(
            given_name=data["given_name"],
            family_name=data["family_name"],
            email=data["email"],
            is_student=bool(data.get("is_student", False)),
            name_id=data.get("name_id"),
        )


@dataclass(frozen=True)
class ClaimMapping:
    """Attribute names consulted for each Identity field, in priority order."""

    given_name: tuple[str, ...] = ("FirstName", "givenName", "urn:oid:2.5.4.42")
    family_name: tuple[str, ...] = ("LastName", "sn", "surname", "urn:oid:2.5.4.4")
    email: tuple[str, ...] = ("email", "mail", "urn:oid:0.9.2342.19200300.100.1.3")
    role_attribute: tuple[str, ...] = (
        "urn:oid:1.3.6.1.4.1.5923.1.1.1.1",
        "eduPersonAffiliation",
    )
    role_marker: str = "Student"
    required: frozenset[str] = field(default_factory=lambda: frozenset(IDENTITY_FIELDS))

    @classmethod
    def from_settings(cls, settings: ClaimSettings) -> ClaimMapping:
        """Build a mapping from the claims section of the configuration."""
        unknown = set(settings.required) - set(IDENTITY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown required claims: {', '.join(sorted(unknown))}")

        return cls(
            given_name=tuple(settings.given_name),
            family_name=tuple(settings.family_name),
            email=tuple(settings.email),
            role_attribute=tuple(settings.role_attribute),
            role_marker=settings.role_marker,
            required=frozenset(settings.required),
        )


def first_value(attributes: Mapping[str, Sequence[str]], names: Sequence[str]) -> str | None:
    """Return the first non-blank value of the first attribute present."""
    for name in names:
        for value in attributes.get(name, ()):
            if value and value.strip():
                return value.strip()
    return None


def has_role_marker(values: Sequence[str], marker: str) -> bool:
    """Check a multi-valued attribute for the role marker.

    Matching is case-insensitive and ignores an "@scope" suffix, so both
    ``student`` and ``Student@example.edu`` carry the ``Student`` marker.
    """
    wanted = marker.casefold()
    for value in values:
        unscoped = value.strip().split("@", 1)[0]
        if unscoped.casefold() == wanted:
            return True
    return False


def derive_role(attributes: Mapping[str, Sequence[str]], mapping: ClaimMapping) -> bool:
    """Role flag: true iff the role attribute carries the marker.

    An absent attribute yields False.
    """
    for name in mapping.role_attribute:
        if has_role_marker(attributes.get(name, ()), mapping.role_marker):
            return True
    return False


def build_identity(
    attributes: Mapping[str, Sequence[str]],
    mapping: ClaimMapping,
    name_id: str | None = None,
    name_id_format: str | None = None,
) -> Identity:
    """Map validated assertion attributes onto an Identity.

    Args:
        attributes: Attribute name to values, from a validated assertion.
        mapping: Attribute names per field and the role rule.
        name_id: The assertion subject's NameID.
        name_id_format: Format URI of the NameID.

    Returns:
        A fully populated Identity.

    Raises:
        MissingClaimError: If a required field has no value.
    """
    values: dict[str, str] = {}
    for field_name in IDENTITY_FIELDS:
        candidates: tuple[str, ...] = getattr(mapping, field_name)
        value = first_value(attributes, candidates)

        if value is None and field_name == "email" and name_id_format == NAMEID_FORMAT_EMAIL:
            value = name_id

        if value is None:
            if field_name in mapping.required:
                raise MissingClaimError(field_name, candidates)
            value = ""
        values[field_name] = value

    return Identity(
        given_name=values["given_name"],
        family_name=values["family_name"],
        email=values["email"],
        is_student=derive_role(attributes, mapping),
        name_id=name_id,
    )
