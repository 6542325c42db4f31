"""Core SAML service provider logic."""

from samlsp.core.logging import (
    Direction,
    LogLevel,
    ProtocolLogger,
    SAMLMessage,
    configure_logging,
    get_protocol_logger,
    redact_sensitive,
    set_protocol_logger,
)

__all__ = [
    "Direction",
    "LogLevel",
    "ProtocolLogger",
    "SAMLMessage",
    "configure_logging",
    "get_protocol_logger",
    "redact_sensitive",
    "set_protocol_logger",
]
