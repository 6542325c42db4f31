"""Web routes for samlsp."""

from flask import Blueprint, Flask
from markupsafe import escape

from samlsp.web.routes.auth import current_identity, login_required

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
@login_required
def index() -> str:
    """Greet the authenticated user."""
    identity = current_identity()
    return f"Hello, {escape(identity.given_name)} {escape(identity.family_name)}"


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from samlsp.web.routes.saml import saml_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(saml_bp)
