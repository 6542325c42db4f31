"""Session gate for protected routes."""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any, cast

from flask import current_app, g, make_response, redirect, request

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

    from samlsp.core.config import AppConfig
    from samlsp.core.identity import Identity
    from samlsp.core.saml.flows import AuthenticationFlow


def get_flow() -> AuthenticationFlow:
    """Get the flow controller from the app context."""
    return cast("AuthenticationFlow", current_app.config["SAMLSP_FLOW"])


def get_config() -> AppConfig:
    """Get the application configuration from the app context."""
    return cast("AppConfig", current_app.config["SAMLSP_CONFIG"])


def get_session_token() -> str | None:
    """Read the session token cookie."""
    return request.cookies.get(get_config().session.cookie_name)


def current_identity() -> Identity:
    """Identity attached to this request by the gate.

    Raises:
        RuntimeError: If the route is not behind login_required.
    """
    identity = g.get("identity")
    if identity is None:
        raise RuntimeError("No authenticated identity; is the route behind login_required?")
    return cast("Identity", identity)


def requested_path() -> str:
    """Path and query of the current request, without a dangling '?'."""
    query = request.query_string.decode("utf-8", errors="replace")
    return f"{request.path}?{query}" if query else request.path


def set_session_cookie(response: WerkzeugResponse, token: str) -> WerkzeugResponse:
    """Attach the session token cookie."""
    settings = get_config().session
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=int(get_flow().sessions.lifetime.total_seconds()),
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="Lax",
    )
    return response


def clear_session_cookie(response: WerkzeugResponse) -> WerkzeugResponse:
    """Remove the session token cookie."""
    settings = get_config().session
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="Lax",
    )
    return response


def login_required(f: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to require a SAML-backed session for a route.

    Anonymous requests are sent straight to the IdP, returning to the
    requested path after login. With sliding sessions the cookie is
    re-issued so its Max-Age follows the server-side expiry.
    """
    @wraps(f)
    def decorated_function(*args: Any, **kwargs: Any) -> Any:
        flow = get_flow()
        token = get_session_token()
        result = flow.authorize(token)

        if not result.is_authenticated or token is None:
            login = flow.initiate_login(return_to=requested_path())
            return redirect(login.url)

        # Store identity in g for access in route
        g.identity = result.identity
        if not get_config().session.sliding:
            return f(*args, **kwargs)

        response = make_response(f(*args, **kwargs))
        return set_session_cookie(response, token)

    return decorated_function
