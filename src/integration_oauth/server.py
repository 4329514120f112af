"""
Flask routes for integration OAuth.

Thin HTTP adapters over the CallbackOrchestrator:
- GET /oauth/<provider_key>/authorize: redirect the browser to the provider
- GET /oauth/callback: provider redirect target; finishes the flow
- GET /oauth/status: liveness endpoint

The routes never show signature or provider internals to the browser;
details go to the server log only.
"""

import logging
from typing import Callable, Optional, Tuple, Union

from flask import Flask, Request, Response, jsonify, redirect, request
from markupsafe import escape

from .exceptions import ConfigurationError
from .orchestrator import CallbackOrchestrator, CallbackResult, FailureReason

logger = logging.getLogger(__name__)

# (user_id, organization_id, integration_id) of the signed-in user, or None
Identity = Tuple[str, Optional[str], Union[int, str]]
IdentityResolver = Callable[[Request], Optional[Identity]]

_FAILURE_STATUS = {
    FailureReason.INVALID_STATE: 400,
    FailureReason.EXCHANGE_FAILED: 502,
    FailureReason.NETWORK_ERROR: 502,
    FailureReason.PERSISTENCE_FAILED: 500,
}


def query_identity_resolver(req: Request) -> Optional[Identity]:
    """
    Read the identity from query parameters.

    For local development and the CLI ``serve`` command only; production
    hosts resolve the identity from their own session.
    """
    user_id = req.args.get("user_id")
    integration_id = req.args.get("integration_id")
    if not user_id or not integration_id:
        return None
    if integration_id.isdigit():
        integration_id = int(integration_id)
    return user_id, req.args.get("organization_id") or None, integration_id


def _render_page(title: str, message: str, success: bool, status: int) -> Response:
    color = "#4caf50" if success else "#d32f2f"
    icon = "✅" if success else "❌"
    return Response(
        f"""<html>
        <head><title>{escape(title)}</title></head>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px;">
            <h1 style="color: {color};">{icon} {escape(title)}</h1>
            <p>{escape(message)}</p>
            <p style="margin-top: 30px; color: #666;">You can close this window.</p>
        </body>
        </html>""",
        status=status,
        content_type="text/html",
    )


def render_result(result: CallbackResult) -> Response:
    """Translate a CallbackResult into an HTML response."""
    if result.success:
        return _render_page("Connection Successful", result.user_message, True, 200)
    return _render_page(
        "Connection Failed",
        result.user_message,
        False,
        _FAILURE_STATUS.get(result.failure, 400),
    )


def create_app(
    orchestrator: CallbackOrchestrator,
    identity_resolver: IdentityResolver = query_identity_resolver,
    callback_path: str = "/oauth/callback",
) -> Flask:
    """
    Build the Flask application exposing the OAuth routes.

    Args:
        orchestrator: Orchestrator handling the flow
        identity_resolver: Returns the signed-in user's identity for a request
        callback_path: Path of the redirect URI registered with providers

    Returns:
        Flask app
    """
    app = Flask(__name__)
    app.logger.setLevel(logging.WARNING)  # Suppress Flask logs
    app.extensions["integration_oauth"] = orchestrator

    def authorize(provider_key: str) -> Response:
        identity = identity_resolver(request)
        if identity is None:
            return _render_page(
                "Sign In Required",
                "Sign in before connecting an integration.",
                False,
                401,
            )

        user_id, organization_id, integration_id = identity
        try:
            url = orchestrator.authorization_url(
                provider_key, user_id, organization_id, integration_id
            )
        except ConfigurationError as e:
            logger.error(f"Authorization requested for unconfigured provider: {e}")
            return _render_page(
                "Unknown Integration",
                "This integration is not available.",
                False,
                404,
            )
        return redirect(url, code=302)

    def callback() -> Response:
        logger.info("Received OAuth callback")

        # Provider-side failure (user clicked "deny", bad scope, ...)
        error = request.args.get("error")
        if error:
            logger.warning(
                f"Provider returned OAuth error: {error} - "
                f"{request.args.get('error_description', '')}"
            )
            return _render_page(
                "Connection Cancelled",
                "The provider did not grant access. Please restart the connection flow.",
                False,
                400,
            )

        # The state must belong to the user finishing the flow, when known
        identity = identity_resolver(request)
        result = orchestrator.handle_callback(
            request.args.get("code"),
            request.args.get("state"),
            expected_user_id=identity[0] if identity else None,
        )
        return render_result(result)

    def status() -> Response:
        return jsonify(
            {
                "status": "running",
                "providers": list(orchestrator.providers.keys()),
            }
        )

    app.add_url_rule(
        "/oauth/<provider_key>/authorize", "oauth_authorize", authorize, methods=["GET"]
    )
    app.add_url_rule(callback_path, "oauth_callback", callback, methods=["GET"])
    app.add_url_rule("/oauth/status", "oauth_status", status, methods=["GET"])

    return app
