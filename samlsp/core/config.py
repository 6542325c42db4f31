"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from cryptography import x509
    from cryptography.hazmat.primitives.asymmetric import rsa

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".samlsp"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Environment variable prefix
ENV_PREFIX = "SAMLSP_"

# eduPersonAffiliation
AFFILIATION_OID = "urn:oid:1.3.6.1.4.1.5923.1.1.1.1"


class ConfigurationError(Exception):
    """Raised when the SP cannot be started with the given configuration."""


@dataclass
class TLSSettings:
    """TLS/HTTPS configuration settings."""

    enabled: bool = False
    cert_path: Path | None = None
    key_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TLSSettings:
        """Create TLSSettings from a dictionary."""
        return cls(
            enabled=data.get("enabled", False),
            cert_path=Path(data["cert_path"]) if data.get("cert_path") else None,
            key_path=Path(data["key_path"]) if data.get("key_path") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "enabled": self.enabled,
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
        }


@dataclass
class ServerSettings:
    """Server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 4006
    debug: bool = False
    tls: TLSSettings = field(default_factory=TLSSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        """Create ServerSettings from a dictionary."""
        tls_data = data.get("tls", {})
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 4006),
            debug=data.get("debug", False),
            tls=TLSSettings.from_dict(tls_data) if tls_data else TLSSettings(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "tls": self.tls.to_dict(),
        }


@dataclass
class ClaimSettings:
    """Which IdP attributes feed which Identity fields."""

    given_name: list[str] = field(
        default_factory=lambda: ["FirstName", "givenName", "urn:oid:2.5.4.42"]
    )
    family_name: list[str] = field(
        default_factory=lambda: ["LastName", "sn", "surname", "urn:oid:2.5.4.4"]
    )
    email: list[str] = field(
        default_factory=lambda: ["email", "mail", "urn:oid:0.9.2342.19200300.100.1.3"]
    )
    role_attribute: list[str] = field(
        default_factory=lambda: [AFFILIATION_OID, "eduPersonAffiliation"]
    )
    role_marker: str = "Student"
    required: list[str] = field(
        default_factory=lambda: ["given_name", "family_name", "email"]
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimSettings:
        """Create ClaimSettings from a dictionary."""
        defaults = cls()
        return cls(
            given_name=_as_list(data.get("given_name"), defaults.given_name),
            family_name=_as_list(data.get("family_name"), defaults.family_name),
            email=_as_list(data.get("email"), defaults.email),
            role_attribute=_as_list(data.get("role_attribute"), defaults.role_attribute),
            role_marker=data.get("role_marker", defaults.role_marker),
            required=_as_list(data.get("required"), defaults.required),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "given_name": list(self.given_name),
            "family_name": list(self.family_name),
            "email": list(self.email),
            "role_attribute": list(self.role_attribute),
            "role_marker": self.role_marker,
            "required": list(self.required),
        }


@dataclass
class SAMLSettings:
    """SAML endpoints, identifiers and key material locations."""

    entry_point: str = ""
    idp_issuer: str = ""
    issuer: str = ""
    callback_url: str = ""
    private_key_path: Path = field(default_factory=lambda: Path("cert/key.pem"))
    decryption_key_path: Path | None = None
    certificate_path: Path = field(default_factory=lambda: Path("cert/cert.pem"))
    idp_certificate_path: Path = field(default_factory=lambda: Path("cert/idp_cert.pem"))
    clock_skew_seconds: int = 180
    request_ttl_seconds: int = 300
    replay_window_seconds: int = 3600
    allow_unsolicited: bool = False
    claims: ClaimSettings = field(default_factory=ClaimSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SAMLSettings:
        """Create SAMLSettings from a dictionary."""
        defaults = cls()
        return cls(
            entry_point=data.get("entry_point", ""),
            idp_issuer=data.get("idp_issuer", ""),
            issuer=data.get("issuer", ""),
            callback_url=data.get("callback_url", ""),
            private_key_path=Path(data.get("private_key_path") or defaults.private_key_path),
            decryption_key_path=(
                Path(data["decryption_key_path"]) if data.get("decryption_key_path") else None
            ),
            certificate_path=Path(data.get("certificate_path") or defaults.certificate_path),
            idp_certificate_path=Path(
                data.get("idp_certificate_path") or defaults.idp_certificate_path
            ),
            clock_skew_seconds=data.get("clock_skew_seconds", 180),
            request_ttl_seconds=data.get("request_ttl_seconds", 300),
            replay_window_seconds=data.get("replay_window_seconds", 3600),
            allow_unsolicited=data.get("allow_unsolicited", False),
            claims=ClaimSettings.from_dict(data.get("claims") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entry_point": self.entry_point,
            "idp_issuer": self.idp_issuer,
            "issuer": self.issuer,
            "callback_url": self.callback_url,
            "private_key_path": str(self.private_key_path),
            "decryption_key_path": (
                str(self.decryption_key_path) if self.decryption_key_path else None
            ),
            "certificate_path": str(self.certificate_path),
            "idp_certificate_path": str(self.idp_certificate_path),
            "clock_skew_seconds": self.clock_skew_seconds,
            "request_ttl_seconds": self.request_ttl_seconds,
            "replay_window_seconds": self.replay_window_seconds,
            "allow_unsolicited": self.allow_unsolicited,
            "claims": self.claims.to_dict(),
        }


@dataclass
class SessionSettings:
    """Local session settings."""

    secret: str = ""
    lifetime_minutes: int = 480
    sliding: bool = False
    cookie_name: str = "sp"
    cookie_secure: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSettings:
        """Create SessionSettings from a dictionary."""
        return cls(
            secret=data.get("secret", ""),
            lifetime_minutes=data.get("lifetime_minutes", 480),
            sliding=data.get("sliding", False),
            cookie_name=data.get("cookie_name", "sp"),
            cookie_secure=data.get("cookie_secure", True),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "secret": self.secret,
            "lifetime_minutes": self.lifetime_minutes,
            "sliding": self.sliding,
            "cookie_name": self.cookie_name,
            "cookie_secure": self.cookie_secure,
        }


@dataclass
class StorageSettings:
    """Where sessions, pending requests and consumed assertion IDs live.

    An empty URL selects the in-memory stores.
    """

    url: str = ""
    echo: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageSettings:
        """Create StorageSettings from a dictionary."""
        return cls(url=data.get("url", ""), echo=data.get("echo", False))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"url": self.url, "echo": self.echo}


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    file: str | None = None
    trace_enabled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=data.get("level", "INFO"),
            file=data.get("file"),
            trace_enabled=data.get("trace_enabled", False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "file": self.file,
            "trace_enabled": self.trace_enabled,
        }


@dataclass
class Credentials:
    """Key material loaded once at startup and shared read-only afterwards."""

    private_key: rsa.RSAPrivateKey
    decryption_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    certificate_pem: str
    idp_certificate_pem: str


@dataclass
class AppConfig:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    saml: SAMLSettings = field(default_factory=SAMLSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary."""
        return cls(
            server=ServerSettings.from_dict(data.get("server") or {}),
            saml=SAMLSettings.from_dict(data.get("saml") or {}),
            session=SessionSettings.from_dict(data.get("session") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "server": self.server.to_dict(),
            "saml": self.saml.to_dict(),
            "session": self.session.to_dict(),
            "storage": self.storage.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    def validate(self) -> None:
        """Check that everything needed to accept assertions is present.

        Raises:
            ConfigurationError: Listing every missing setting.
        """
        missing = []
        if not self.saml.entry_point:
            missing.append("saml.entry_point")
        if not self.saml.idp_issuer:
            missing.append("saml.idp_issuer")
        if not self.saml.issuer:
            missing.append("saml.issuer")
        if not self.saml.callback_url:
            missing.append("saml.callback_url")
        if not self.session.secret:
            missing.append("session.secret")

        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

        if self.session.lifetime_minutes <= 0:
            raise ConfigurationError("session.lifetime_minutes must be positive")

    def load_credentials(self) -> Credentials:
        """Read the SP key pair and the IdP certificate from disk.

        Returns:
            Credentials holding parsed key objects and PEM strings.

        Raises:
            ConfigurationError: If any file is missing or unreadable.
        """
        from samlsp.core.crypto import (
            CertificateError,
            get_certificate_pem,
            key_matches_certificate,
            load_certificate,
            load_private_key,
        )

        saml = self.saml
        try:
            private_key = load_private_key(saml.private_key_path)
            if saml.decryption_key_path:
                decryption_key = load_private_key(saml.decryption_key_path)
            else:
                decryption_key = private_key
            certificate = load_certificate(saml.certificate_path)
            idp_certificate = load_certificate(saml.idp_certificate_path)
        except CertificateError as e:
            raise ConfigurationError(str(e)) from e

        if not key_matches_certificate(private_key, certificate):
            raise ConfigurationError(
                f"SP private key {saml.private_key_path} does not match certificate "
                f"{saml.certificate_path}"
            )

        return Credentials(
            private_key=private_key,
            decryption_key=decryption_key,
            certificate=certificate,
            certificate_pem=get_certificate_pem(certificate),
            idp_certificate_pem=get_certificate_pem(idp_certificate),
        )


def _as_list(value: Any, default: list[str]) -> list[str]:
    """Accept a single string or a list from YAML."""
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Environment variable -> (section, attribute) for plain string settings
_ENV_STRINGS: dict[str, tuple[str, str]] = {
    "HOST": ("server", "host"),
    "ENTRY_POINT": ("saml", "entry_point"),
    "IDP_ISSUER": ("saml", "idp_issuer"),
    "ISSUER": ("saml", "issuer"),
    "CALLBACK_URL": ("saml", "callback_url"),
    "SESSION_SECRET": ("session", "secret"),
    "STORAGE_URL": ("storage", "url"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}

_ENV_PATHS: dict[str, str] = {
    "SP_KEY": "private_key_path",
    "SP_DECRYPTION_KEY": "decryption_key_path",
    "SP_CERT": "certificate_path",
    "IDP_CERT": "idp_certificate_path",
}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings.

    Raises:
        ConfigurationError: If the config file exists but cannot be parsed.
    """
    config = AppConfig()

    file_path = config_path or DEFAULT_CONFIG_FILE
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid config file {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid config file {file_path}: expected a mapping")
        config = AppConfig.from_dict(data, config_path=file_path)

    for suffix, (section, attr) in _ENV_STRINGS.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value:
            setattr(getattr(config, section), attr, value)

    for suffix, attr in _ENV_PATHS.items():
        value = os.environ.get(f"{ENV_PREFIX}{suffix}")
        if value:
            setattr(config.saml, attr, Path(value))

    config.server.port = _get_env_int(f"{ENV_PREFIX}PORT", config.server.port)
    config.server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", config.server.debug)
    config.session.lifetime_minutes = _get_env_int(
        f"{ENV_PREFIX}SESSION_LIFETIME_MINUTES", config.session.lifetime_minutes
    )
    config.session.cookie_secure = _get_env_bool(
        f"{ENV_PREFIX}COOKIE_SECURE", config.session.cookie_secure
    )
    config.saml.allow_unsolicited = _get_env_bool(
        f"{ENV_PREFIX}ALLOW_UNSOLICITED", config.saml.allow_unsolicited
    )

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# samlsp configuration file
# Environment variables override these settings (prefix: SAMLSP_)

server:
  host: "127.0.0.1"
  port: 4006
  debug: false
  tls:
    # Serve HTTPS directly instead of behind a reverse proxy
    enabled: false
    # cert_path: /etc/samlsp/tls.crt
    # key_path: /etc/samlsp/tls.key

saml:
  # IdP SSO endpoint (HTTP-Redirect binding)
  entry_point: ""
  # Issuer the IdP puts in its assertions
  idp_issuer: ""
  # Our entity ID, usually ending in /shibboleth
  issuer: ""
  # Assertion Consumer Service URL
  callback_url: ""

  private_key_path: cert/key.pem
  # decryption_key_path: cert/key.pem
  certificate_path: cert/cert.pem
  idp_certificate_path: cert/idp_cert.pem

  clock_skew_seconds: 180
  request_ttl_seconds: 300
  replay_window_seconds: 3600
  allow_unsolicited: false

  claims:
    given_name: [FirstName, givenName, "urn:oid:2.5.4.42"]
    family_name: [LastName, sn, surname, "urn:oid:2.5.4.4"]
    email: [email, mail, "urn:oid:0.9.2342.19200300.100.1.3"]
    role_attribute: ["urn:oid:1.3.6.1.4.1.5923.1.1.1.1", eduPersonAffiliation]
    role_marker: Student
    required: [given_name, family_name, email]

session:
  secret: ""
  lifetime_minutes: 480
  # Extend the session on each request instead of a fixed lifetime
  sliding: false
  cookie_name: sp
  cookie_secure: true

storage:
  # Empty for in-memory stores, or an SQLAlchemy URL such as
  # sqlite:////var/lib/samlsp/samlsp.db
  url: ""

logging:
  level: INFO
  # file: /var/log/samlsp.log
  # Log full SAML messages (contains personal data)
  trace_enabled: false
"""
