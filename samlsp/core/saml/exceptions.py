"""Reasons a SAML Response is rejected.

Every failure carries the validation stage at which it was detected. The
stage and message are for server-side logs only; the browser sees a
generic authentication failure.
"""

from __future__ import annotations

from enum import StrEnum


class ValidationStage(StrEnum):
    """Step of response validation that failed."""

    MALFORMED = "malformed"
    SIGNATURE = "signature"
    STATUS = "status"
    ISSUER = "issuer"
    AUDIENCE = "audience"
    EXPIRED = "expired"
    REPLAYED = "replayed"
    DECRYPTION = "decryption"
    ATTRIBUTES = "attributes"


class ValidationError(Exception):
    """Base class for rejected SAML Responses."""

    stage: ValidationStage

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class MalformedResponse(ValidationError):
    """Not decodable, not well-formed, or not shaped like a SAML Response."""

    stage = ValidationStage.MALFORMED


class SignatureInvalid(ValidationError):
    """No valid signature by the trusted IdP covers the assertion."""

    stage = ValidationStage.SIGNATURE


class StatusError(ValidationError):
    """The IdP reported a non-success status."""

    stage = ValidationStage.STATUS


class IssuerMismatch(ValidationError):
    """The assertion was issued by someone other than the configured IdP."""

    stage = ValidationStage.ISSUER


class AudienceMismatch(ValidationError):
    """The assertion was meant for another SP or endpoint."""

    stage = ValidationStage.AUDIENCE


class Expired(ValidationError):
    """Outside the validity window, or answers no live AuthnRequest."""

    stage = ValidationStage.EXPIRED


class Replayed(ValidationError):
    """The assertion or its AuthnRequest was already used."""

    stage = ValidationStage.REPLAYED


class DecryptionFailed(ValidationError):
    """An EncryptedAssertion could not be decrypted."""

    stage = ValidationStage.DECRYPTION


class MissingAttribute(ValidationError):
    """A required claim is absent from the assertion."""

    stage = ValidationStage.ATTRIBUTES
