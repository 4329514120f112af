"""
Click CLI for integration OAuth.

Commands:
    authorize-url   Print the provider URL that starts a connection flow
    refresh         Refresh the stored tokens of a connection
    status          Show stored token status for a connection
    connections     List stored connections
    disconnect      Delete the stored tokens of a connection
    serve           Run the callback routes with Flask's development server

Configuration comes from INTEGRATION_OAUTH_* and <PROVIDER>_* environment
variables (see integration_oauth.config).
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import click

from .config import OAuthSettings
from .exceptions import ConfigurationError, TokenStorageError
from .orchestrator import CallbackOrchestrator
from .server import create_app
from .token_exchanger import TokenExchanger
from .token_storage import FileTokenStore

logger = logging.getLogger(__name__)


def build_orchestrator(settings: OAuthSettings) -> CallbackOrchestrator:
    """Wire an orchestrator from settings."""
    return CallbackOrchestrator(
        providers=settings.load_providers(),
        secret=settings.signing_secret,
        token_store=FileTokenStore(settings.token_path),
        exchanger=TokenExchanger(timeout=settings.token_request_timeout),
        max_age=timedelta(seconds=settings.state_max_age_seconds),
        refresh_buffer_seconds=settings.refresh_buffer_seconds,
    )


def _get_orchestrator(ctx: click.Context) -> CallbackOrchestrator:
    """Get (and lazily build) the orchestrator from context."""
    if "orchestrator" not in ctx.obj:
        try:
            ctx.obj["orchestrator"] = build_orchestrator(ctx.obj["settings"])
        except ConfigurationError as e:
            _print_error(str(e))
            sys.exit(2)
    return ctx.obj["orchestrator"]


def _print_error(message: str) -> None:
    """Print error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def _print_success(message: str) -> None:
    """Print success message."""
    click.secho(message, fg="green")


def _integration_id(value: str):
    return int(value) if value.isdigit() else value


connection_options = [
    click.option("--user-id", "-u", required=True, help="User owning the connection"),
    click.option("--organization-id", "-o", default=None, help="Organization of the connection"),
    click.option("--integration-id", "-i", required=True, help="Integration identifier"),
]


def with_connection_options(func):
    for option in reversed(connection_options):
        func = option(func)
    return func


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Connect third-party integrations with OAuth2."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault("settings", OAuthSettings())


@cli.command("authorize-url")
@click.argument("provider")
@with_connection_options
@click.pass_context
def authorize_url(
    ctx: click.Context,
    provider: str,
    user_id: str,
    organization_id: Optional[str],
    integration_id: str,
) -> None:
    """Print the authorization URL for PROVIDER."""
    orchestrator = _get_orchestrator(ctx)
    try:
        url = orchestrator.authorization_url(
            provider, user_id, organization_id, _integration_id(integration_id)
        )
    except ConfigurationError as e:
        _print_error(str(e))
        sys.exit(2)
    click.echo(url)


@cli.command()
@click.argument("provider")
@with_connection_options
@click.pass_context
def refresh(
    ctx: click.Context,
    provider: str,
    user_id: str,
    organization_id: Optional[str],
    integration_id: str,
) -> None:
    """Refresh the stored tokens of a PROVIDER connection."""
    orchestrator = _get_orchestrator(ctx)
    key = _integration_id(integration_id)

    tokens = orchestrator.token_store.load(user_id, organization_id, key)
    if tokens is None or not tokens.refresh_token:
        _print_error("No refresh token stored for this connection. Reconnect it first.")
        sys.exit(1)

    try:
        result = orchestrator.refresh_token(provider, tokens.refresh_token)
    except ConfigurationError as e:
        _print_error(str(e))
        sys.exit(2)

    if not result.success:
        _print_error(f"{result.failure.value}: {result.detail}")
        sys.exit(1)

    try:
        orchestrator.token_store.save(user_id, organization_id, key, result.tokens)
    except TokenStorageError as e:
        _print_error(f"Tokens refreshed but not saved: {e}")
        sys.exit(1)

    expires_at = result.tokens.expires_at
    _print_success(
        "Tokens refreshed"
        + (f" (expires {expires_at.isoformat()})" if expires_at else "")
    )


@cli.command()
@with_connection_options
@click.pass_context
def status(
    ctx: click.Context,
    user_id: str,
    organization_id: Optional[str],
    integration_id: str,
) -> None:
    """Show stored token status for a connection."""
    settings: OAuthSettings = ctx.obj["settings"]
    store = FileTokenStore(settings.token_path)
    tokens = store.load(user_id, organization_id, _integration_id(integration_id))

    if tokens is None:
        click.secho("Not connected (no tokens stored)", fg="yellow")
        sys.exit(1)

    click.secho("Connected", fg="green", bold=True)
    click.echo(f"Token type:    {tokens.token_type}")
    click.echo(f"Scopes:        {tokens.scope or '-'}")
    click.echo(f"Obtained at:   {tokens.obtained_at.isoformat()}")
    click.echo(f"Refresh token: {'yes' if tokens.refresh_token else 'no'}")
    expires_at = tokens.expires_at
    if expires_at is None:
        click.echo("Expires:       unknown")
    else:
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        label = "expired" if remaining <= 0 else f"in {int(remaining)}s"
        click.echo(f"Expires:       {expires_at.isoformat()} ({label})")


@cli.command()
@click.pass_context
def connections(ctx: click.Context) -> None:
    """List stored connections."""
    settings: OAuthSettings = ctx.obj["settings"]
    stored = FileTokenStore(settings.token_path).connections()

    if not stored:
        click.secho("No connections stored", fg="yellow")
        return

    for user_id, organization_id, integration_id in stored:
        click.echo(
            f"user={user_id} organization={organization_id or '-'} "
            f"integration={integration_id}"
        )


@cli.command()
@with_connection_options
@click.pass_context
def disconnect(
    ctx: click.Context,
    user_id: str,
    organization_id: Optional[str],
    integration_id: str,
) -> None:
    """Delete the stored tokens of a connection."""
    orchestrator = _get_orchestrator(ctx)
    try:
        deleted = orchestrator.disconnect(
            user_id, organization_id, _integration_id(integration_id)
        )
    except TokenStorageError as e:
        _print_error(str(e))
        sys.exit(1)

    if not deleted:
        _print_error("Not connected (no tokens stored)")
        sys.exit(1)

    _print_success(f"Disconnected integration {integration_id}")


@cli.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", default=None, type=int, help="Port (default from settings)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the OAuth routes (development server)."""
    settings: OAuthSettings = ctx.obj["settings"]
    app = create_app(_get_orchestrator(ctx))
    host = host or settings.host
    port = port or settings.port
    logger.info(f"Starting OAuth callback server on {host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
