"""SAML login, callback, logout and metadata routes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import Blueprint, Response, current_app, redirect, request

from samlsp.web.routes.auth import (
    clear_session_cookie,
    get_flow,
    get_session_token,
    set_session_cookie,
)

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

saml_bp = Blueprint("saml", __name__)

FAILURE_MESSAGE = "Failed to authenticate"


def _failure() -> Response:
    response: Response = current_app.make_response((FAILURE_MESSAGE, 401))
    response.headers["Content-Type"] = "text/plain; charset=utf-8"
    return response


@saml_bp.route("/login")
def login() -> WerkzeugResponse:
    """Start SP-initiated SSO, returning to ``next`` afterwards."""
    flow = get_flow()
    redirect_to = flow.initiate_login(return_to=request.args.get("next", "/"))
    return redirect(redirect_to.url)


@saml_bp.route("/login/callback", methods=["POST"])
def callback() -> Response | WerkzeugResponse:
    """Assertion Consumer Service - handles SAML Response from IdP.

    Any validation failure yields the same generic 401; the reason is only
    logged server-side.
    """
    outcome = get_flow().complete_login(request.form.get("SAMLResponse"))

    if not outcome.succeeded or outcome.token is None:
        return _failure()

    response = redirect(outcome.redirect_to)
    return set_session_cookie(response, outcome.token)


@saml_bp.route("/login/fail")
def login_fail() -> Response:
    """Generic authentication failure page."""
    return _failure()


@saml_bp.route("/logout", methods=["GET", "POST"])
def logout() -> WerkzeugResponse:
    """End the local session."""
    get_flow().logout(get_session_token())
    return clear_session_cookie(redirect("/"))


@saml_bp.route("/metadata")
@saml_bp.route("/Shibboleth.sso/Metadata")
def metadata() -> Response:
    """Serve SP metadata XML."""
    response: Response = current_app.make_response(get_flow().metadata())
    response.headers["Content-Type"] = "application/xml"
    return response
