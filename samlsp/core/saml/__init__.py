"""SAML 2.0 Web Browser SSO for a Service Provider."""

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
from samlsp.core.saml.flows import (
    AuthenticationFlow,
    FlowStatus,
    GateResult,
    LoginOutcome,
    LoginRedirect,
    sanitize_return_to,
)
from samlsp.core.saml.metadata import generate_metadata
from samlsp.core.saml.sp import AuthnRequestContext, SAMLRequest, SAMLServiceProvider
from samlsp.core.saml.validator import AssertionValidator, ValidatedResponse

__all__ = [
    # Flow
    "AuthenticationFlow",
    "FlowStatus",
    "GateResult",
    "LoginOutcome",
    "LoginRedirect",
    "sanitize_return_to",
    # Messages
    "AuthnRequestContext",
    "SAMLRequest",
    "SAMLServiceProvider",
    "generate_metadata",
    # Validation
    "AssertionValidator",
    "ValidatedResponse",
    "AudienceMismatch",
    "DecryptionFailed",
    "Expired",
    "IssuerMismatch",
    "MalformedResponse",
    "MissingAttribute",
    "Replayed",
    "SignatureInvalid",
    "StatusError",
    "ValidationError",
    "ValidationStage",
]
