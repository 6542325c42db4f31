"""Protocol logging for SAML exchanges.

Records the AuthnRequests sent to the IdP and the Responses received from it,
with configurable log levels and sensitive data protection.

Log levels:
- ERROR: Only log errors
- INFO: Log flow milestones (login initiated, session created, failures)
- DEBUG: Log message metadata (IDs, issuer, destination)
- TRACE: Log full SAML XML including personal data (requires explicit enable)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

# Custom log level for TRACE (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Module logger
logger = logging.getLogger("samlsp.protocol")


class LogLevel(IntEnum):
    """Protocol logging levels."""

    ERROR = logging.ERROR  # 40
    INFO = logging.INFO  # 20
    DEBUG = logging.DEBUG  # 10
    TRACE = TRACE  # 5


class Direction(StrEnum):
    """Which way a SAML message travelled."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"


# Patterns for sensitive data redaction
SENSITIVE_PATTERNS = [
    # Binding parameters
    (re.compile(r"(SAMLResponse=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(SAMLRequest=)[^&\s]+"), r"\1[REDACTED]"),
    (re.compile(r"(Signature=)[^&\s]+"), r"\1[REDACTED]"),
    # HTTP headers
    (re.compile(r"(Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Set-Cookie:\s*)[^\r\n]+", re.IGNORECASE), r"\1[REDACTED]"),
    # XML payloads
    (
        re.compile(r"(<(?:\w+:)?AttributeValue\b[^>]*>)[^<]*(</)"),
        r"\1[REDACTED]\2",
    ),
    (re.compile(r"(<(?:\w+:)?NameID\b[^>]*>)[^<]*(</)"), r"\1[REDACTED]\2"),
    (re.compile(r"(<(?:\w+:)?CipherValue\b[^>]*>)[^<]*(</)"), r"\1[REDACTED]\2"),
]


def redact_sensitive(text: str) -> str:
    """Redact sensitive information from text.

    Args:
        text: Text that may contain sensitive data.

    Returns:
        Text with sensitive data redacted.
    """
    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


@dataclass
class SAMLMessage:
    """A single SAML protocol message crossing the SP boundary."""

    message_id: str
    kind: str
    direction: Direction
    binding: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    in_response_to: str | None = None
    issuer: str | None = None
    destination: str | None = None
    xml: str | None = None
    error: str | None = None

    def to_dict(self, include_sensitive: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Args:
            include_sensitive: If True, include the raw XML.
                               If False, redact personal data.
        """
        xml = self.xml
        if xml is not None and not include_sensitive:
            xml = redact_sensitive(xml)

        return {
            "message_id": self.message_id,
            "kind": self.kind,
            "direction": self.direction.value,
            "binding": self.binding,
            "timestamp": self.timestamp.isoformat(),
            "in_response_to": self.in_response_to,
            "issuer": self.issuer,
            "destination": self.destination,
            "xml": xml,
            "error": self.error,
        }

    def format_log(self, level: LogLevel, include_sensitive: bool = False) -> str:
        """Format the message for logging.

        Args:
            level: Log level determines how much detail to include.
            include_sensitive: If True, include raw personal data.
        """
        arrow = "->" if self.direction == Direction.OUTBOUND else "<-"
        lines = [f"SAML {arrow} {self.kind} {self.message_id} ({self.binding})"]

        if self.error:
            lines.append(f"  Error: {self.error}")

        if level <= LogLevel.DEBUG:
            if self.issuer:
                lines.append(f"  Issuer: {self.issuer}")
            if self.destination:
                lines.append(f"  Destination: {self.destination}")
            if self.in_response_to:
                lines.append(f"  InResponseTo: {self.in_response_to}")

        if level <= LogLevel.TRACE and self.xml:
            body = self.xml if include_sensitive else redact_sensitive(self.xml)
            lines.append("  XML:")
            lines.append(f"    {body[:4000]}{'...' if len(body) > 4000 else ''}")

        return "\n".join(lines)


class ProtocolLogger:
    """Configurable protocol logger for SAML exchanges."""

    def __init__(
        self,
        level: LogLevel = LogLevel.INFO,
        trace_enabled: bool = False,
    ) -> None:
        """Initialize the protocol logger.

        Args:
            level: Minimum log level.
            trace_enabled: Whether TRACE level is enabled (for personal data).
        """
        self._level = level
        self._trace_enabled = trace_enabled

    @property
    def level(self) -> LogLevel:
        """Get current log level."""
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        """Set log level."""
        self._level = value

    @property
    def trace_enabled(self) -> bool:
        """Whether TRACE level is enabled."""
        return self._trace_enabled

    @property
    def effective_level(self) -> LogLevel:
        """Get effective log level (TRACE only if explicitly enabled)."""
        if self._level == LogLevel.TRACE and not self._trace_enabled:
            return LogLevel.DEBUG
        return self._level

    def log_message(self, message: SAMLMessage) -> None:
        """Log a SAML message at the configured level.

        Args:
            message: The message to log.
        """
        effective = self.effective_level
        include_sensitive = self._trace_enabled and self._level <= LogLevel.TRACE

        if effective <= LogLevel.DEBUG:
            logger.debug(message.format_log(effective, include_sensitive))
        elif effective <= LogLevel.INFO:
            logger.info(message.format_log(effective, include_sensitive))

        if message.error:
            logger.warning(f"SAML {message.kind} {message.message_id} rejected: {message.error}")


# Global protocol logger instance
_global_logger: ProtocolLogger | None = None


def get_protocol_logger() -> ProtocolLogger:
    """Get the global protocol logger instance."""
    global _global_logger
    if _global_logger is None:
        _global_logger = ProtocolLogger()
    return _global_logger


def set_protocol_logger(logger_instance: ProtocolLogger) -> None:
    """Set the global protocol logger instance."""
    global _global_logger
    _global_logger = logger_instance


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    trace_enabled: bool = False,
    log_file: str | None = None,
) -> ProtocolLogger:
    """Configure application and protocol logging.

    Args:
        level: Log level (ERROR, INFO, DEBUG, TRACE) or string name.
        trace_enabled: Whether to enable TRACE level (includes personal data).
        log_file: Optional file path to write logs to.

    Returns:
        Configured ProtocolLogger.
    """
    if isinstance(level, str):
        level_map = {
            "ERROR": LogLevel.ERROR,
            "WARNING": LogLevel.INFO,
            "INFO": LogLevel.INFO,
            "DEBUG": LogLevel.DEBUG,
            "TRACE": LogLevel.TRACE,
        }
        level = level_map.get(level.upper(), LogLevel.INFO)

    # The package logger; samlsp.protocol and friends propagate to it
    app_logger = logging.getLogger("samlsp")
    app_logger.setLevel(level)
    app_logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    app_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        app_logger.addHandler(file_handler)

    protocol_logger = ProtocolLogger(level=level, trace_enabled=trace_enabled)
    set_protocol_logger(protocol_logger)

    if trace_enabled:
        logger.warning(
            "TRACE logging enabled - SAML attributes and NameIDs will be logged!"
        )

    return protocol_logger
