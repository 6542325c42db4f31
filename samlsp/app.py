"""Flask application factory."""

from __future__ import annotations

import logging
import ssl
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from flask import Flask
from werkzeug.exceptions import HTTPException, InternalServerError

from samlsp.core.config import AppConfig, load_config

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

    from samlsp.storage.stores import Stores

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    stores: Stores | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Flask:
    """Create and configure the Flask application.

    The configuration is validated and all key material is loaded here, so
    a misconfigured service fails at startup rather than on first login.

    Args:
        config: Application configuration. Loads from file/env if not provided.
        stores: Session, replay and request stores. Built from the storage
            settings if not provided.
        clock: Source of the current time, for tests.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: If required settings or key material are missing.
    """
    from samlsp.core.saml.flows import AuthenticationFlow
    from samlsp.storage import build_stores

    if config is None:
        config = load_config()

    config.validate()
    credentials = config.load_credentials()

    if stores is None:
        stores = build_stores(config)

    flow = AuthenticationFlow.from_config(
        config,
        credentials,
        stores,
        clock=clock or (lambda: datetime.now(UTC)),
    )

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY=config.session.secret,
        SAMLSP_CONFIG=config,
        SAMLSP_FLOW=flow,
        SAMLSP_STORES=stores,
    )
    app.debug = config.server.debug

    # Register blueprints
    from samlsp.web import routes

    routes.init_app(app)

    @app.errorhandler(Exception)
    def handle_unexpected_error(e: Exception) -> HTTPException | WerkzeugResponse:
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error while serving request")
        return InternalServerError(original_exception=e)

    logger.info("Service provider %s ready", config.saml.issuer)
    return app


def create_ssl_context(
    cert_path: Path,
    key_path: Path,
) -> ssl.SSLContext:
    """Create an SSL context for HTTPS.

    Args:
        cert_path: Path to the certificate file (PEM format).
        key_path: Path to the private key file (PEM format).

    Returns:
        Configured SSL context.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(cert_path), str(key_path))
    return context


def run_server(
    app_config: AppConfig | None = None,
    host: str | None = None,
    port: int | None = None,
    debug: bool | None = None,
) -> None:
    """Run the Flask development server.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        host: Override host from config.
        port: Override port from config.
        debug: Override debug mode from config.
    """
    from samlsp.core.logging import configure_logging

    # Load configuration
    if app_config is None:
        app_config = load_config()

    configure_logging(
        level=app_config.logging.level,
        trace_enabled=app_config.logging.trace_enabled,
        log_file=app_config.logging.file,
    )

    # Apply overrides
    server_host = host or app_config.server.host
    server_port = port or app_config.server.port
    if debug is not None:
        app_config.server.debug = debug
    tls_settings = app_config.server.tls

    app = create_app(app_config)

    ssl_context: ssl.SSLContext | None = None

    if tls_settings.enabled:
        if not tls_settings.cert_path or not tls_settings.key_path:
            raise ValueError("server.tls.cert_path and server.tls.key_path are required with TLS")
        ssl_context = create_ssl_context(tls_settings.cert_path, tls_settings.key_path)
        protocol = "https"
    else:
        protocol = "http"
        if app_config.session.cookie_secure:
            print("WARNING: TLS is disabled but session cookies are marked Secure.")
            print("         Serve behind an HTTPS proxy or set session.cookie_secure: false.")
            print("")

    print("Starting samlsp server...")
    print(f"  URL: {protocol}://{server_host}:{server_port}")
    print(f"  Entity ID: {app_config.saml.issuer}")
    print("")

    app.run(
        host=server_host,
        port=server_port,
        ssl_context=ssl_context,
    )
