"""SAML authentication flow.

Drives the per-browser state machine:

    ANONYMOUS -> PENDING_ASSERTION -> AUTHENTICATED
                                   -> FAILED

The controller is transport-agnostic; the web layer maps its explicit
outcomes onto redirects, cookies and status codes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from samlsp.core.identity import Identity
from samlsp.core.logging import Direction, SAMLMessage, get_protocol_logger
from samlsp.core.saml.exceptions import ValidationError, ValidationStage
from samlsp.core.saml.sp import BINDING_HTTP_REDIRECT, SAMLServiceProvider
from samlsp.core.saml.validator import AssertionValidator
from samlsp.core.session import SessionManager

if TYPE_CHECKING:
    from samlsp.core.config import AppConfig, Credentials
    from samlsp.core.logging import ProtocolLogger
    from samlsp.storage.stores import RequestStore, Stores

logger = logging.getLogger(__name__)

DEFAULT_RETURN_TO = "/"
MAX_RETURN_TO_LENGTH = 2048


class FlowStatus(StrEnum):
    """Authentication state of a browser."""

    ANONYMOUS = "anonymous"
    PENDING_ASSERTION = "pending_assertion"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class GateResult:
    """Outcome of checking a request's session token."""

    status: FlowStatus
    identity: Identity | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.status == FlowStatus.AUTHENTICATED


@dataclass(frozen=True)
class LoginRedirect:
    """Where to send the browser to authenticate at the IdP."""

    url: str
    request_id: str
    return_to: str
    status: FlowStatus = FlowStatus.PENDING_ASSERTION


@dataclass(frozen=True)
class LoginOutcome:
    """Result of processing a SAML Response.

    ``stage`` and ``reason`` describe a failure for server-side logs and
    must not be shown to the browser.
    """

    status: FlowStatus
    token: str | None = None
    identity: Identity | None = None
    redirect_to: str = DEFAULT_RETURN_TO
    stage: ValidationStage | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == FlowStatus.AUTHENTICATED


def sanitize_return_to(value: object) -> str:
    """Reduce a post-login target to a local path.

    Anything that could leave this origin (absolute URLs, protocol-relative
    ``//host`` paths, backslashes, control characters) becomes ``/``.
    """
    if not isinstance(value, str) or not value or len(value) > MAX_RETURN_TO_LENGTH:
        return DEFAULT_RETURN_TO
    if not value.startswith("/") or value.startswith("//"):
        return DEFAULT_RETURN_TO
    if "\\" in value or any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        return DEFAULT_RETURN_TO
    return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuthenticationFlow:
    """Orchestrates SP-initiated SSO and local sessions.

    This flow follows these steps:
    1. An unauthenticated request is sent to the IdP with a signed AuthnRequest
    2. The IdP posts a SAML Response back to the callback
    3. The Response is validated and a local session is created
    4. The browser returns to the page it originally asked for
    """

    def __init__(
        self,
        sp: SAMLServiceProvider,
        validator: AssertionValidator,
        sessions: SessionManager,
        requests: RequestStore,
        clock: Callable[[], datetime] = _utcnow,
        protocol_logger: ProtocolLogger | None = None,
    ) -> None:
        """Initialize the flow controller.

        Args:
            sp: Builds and signs AuthnRequests.
            validator: Validates SAML Responses.
            sessions: Issues and resolves session tokens.
            requests: Records outstanding AuthnRequests.
            clock: Source of the current time.
            protocol_logger: Logger for outbound messages.
        """
        self.sp = sp
        self.validator = validator
        self.sessions = sessions
        self.requests = requests
        self._clock = clock
        self._protocol_logger = protocol_logger

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        credentials: Credentials,
        stores: Stores,
        clock: Callable[[], datetime] = _utcnow,
    ) -> AuthenticationFlow:
        """Wire up the controller from configuration and stores."""
        sp = SAMLServiceProvider(config.saml, credentials)
        validator = AssertionValidator(
            config.saml,
            credentials,
            replay_cache=stores.replay,
            request_store=stores.requests,
            clock=clock,
        )
        sessions = SessionManager(
            stores.sessions,
            lifetime=timedelta(minutes=config.session.lifetime_minutes),
            sliding=config.session.sliding,
            clock=clock,
        )
        return cls(sp, validator, sessions, stores.requests, clock=clock)

    def authorize(self, token: object) -> GateResult:
        """Check a session token from the browser."""
        identity = self.sessions.resolve(token)
        if identity is None:
            return GateResult(status=FlowStatus.ANONYMOUS)
        return GateResult(status=FlowStatus.AUTHENTICATED, identity=identity)

    def initiate_login(self, return_to: object = DEFAULT_RETURN_TO) -> LoginRedirect:
        """Start SP-initiated SSO.

        Args:
            return_to: Local path to land on after login.

        Returns:
            LoginRedirect with the signed IdP URL.
        """
        now = self._clock()
        target = sanitize_return_to(return_to)

        request = self.sp.create_authn_request(now)
        self.requests.put(self.sp.create_request_context(request, target, now))
        url = self.sp.build_sso_redirect_url(request)

        (self._protocol_logger or get_protocol_logger()).log_message(
            SAMLMessage(
                message_id=request.id,
                kind="AuthnRequest",
                direction=Direction.OUTBOUND,
                binding=BINDING_HTTP_REDIRECT,
                timestamp=now,
                issuer=request.issuer,
                destination=request.destination,
                xml=request.to_xml(),
            )
        )
        logger.info("Login initiated with request %s", request.id)
        return LoginRedirect(url=url, request_id=request.id, return_to=target)

    def complete_login(self, raw_response: str | bytes | None) -> LoginOutcome:
        """Process the SAML Response posted to the callback.

        Validation failures never raise; they yield a FAILED outcome. The
        rejection is logged once, at WARNING, by the validator.
        """
        if not raw_response:
            logger.warning("Login failed at %s: no SAMLResponse posted", ValidationStage.MALFORMED)
            return LoginOutcome(
                status=FlowStatus.FAILED,
                stage=ValidationStage.MALFORMED,
                reason="No SAMLResponse posted",
            )

        try:
            validated = self.validator.validate_response(raw_response)
        except ValidationError as e:
            # The validator already reported the rejection at WARNING
            logger.info("Login failed at %s: %s", e.stage, e.message)
            return LoginOutcome(status=FlowStatus.FAILED, stage=e.stage, reason=e.message)

        token = self.sessions.create(validated.identity)
        redirect_to = validated.request.return_to if validated.request else DEFAULT_RETURN_TO
        return LoginOutcome(
            status=FlowStatus.AUTHENTICATED,
            token=token,
            identity=validated.identity,
            redirect_to=sanitize_return_to(redirect_to),
        )

    def logout(self, token: object) -> None:
        """End the local session, if any."""
        self.sessions.invalidate(token)

    def metadata(self) -> bytes:
        """SP metadata document."""
        return self.sp.generate_metadata()

    def purge_expired(self) -> int:
        """Sweep expired sessions and pending requests."""
        now = self._clock()
        return self.sessions.purge_expired() + self.requests.purge_expired(now)
