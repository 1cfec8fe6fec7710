"""Command-line interface for gworkspace-auth."""

import asyncio
import logging
import sys

import click

from gworkspace_auth.__version__ import __version__
from gworkspace_auth.auth.factory import AuthFactory
from gworkspace_auth.auth.models import TokenStatus
from gworkspace_auth.config import AuthSettings
from gworkspace_auth.errors import AuthError, user_message


def _load_settings() -> AuthSettings:
    try:
        return AuthSettings.from_env()
    except AuthError as e:
        click.echo(f"❌ {e.message}", err=True)
        click.echo(user_message(e), err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log lifecycle events to stderr")
def main(verbose: bool) -> None:
    """Google Workspace MCP authentication.

    Inspect, refresh, and remove the cached OAuth2 credentials used by the
    Google Workspace MCP server.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
def status() -> None:
    """Show the authentication mode and the cached token status.

    Never modifies the cache: a corrupted record is reported, not removed.
    """
    settings = _load_settings()
    mode = AuthFactory.determine_mode(settings)

    click.echo("Google Workspace authentication:")
    click.echo(f"  Mode: {mode}")

    if mode != "oauth2":
        configured = "configured" if settings.service_account_key_path else "not set"
        click.echo(f"  Service account key: {configured}")
        return

    storage = AuthFactory.create_token_storage(settings)
    token_status = asyncio.run(storage.get_status())
    click.echo(f"  Token file: {storage.file_cache.token_path}")

    if token_status == TokenStatus.MISSING:
        click.echo("  ❌ Not authenticated")
        sys.exit(1)
    elif token_status == TokenStatus.INVALID:
        click.echo("  ❌ Cached credentials corrupted")
        click.echo("")
        click.echo("They will be quarantined on next use. Authorize the application again.")
        sys.exit(1)
    elif token_status == TokenStatus.EXPIRED:
        click.echo("  ⚠️  Token expired (will refresh automatically on use)")
    else:
        click.echo("  ✓ Authenticated")


@main.command()
def refresh() -> None:
    """Refresh the access token now and save it."""
    settings = _load_settings()

    async def run() -> None:
        provider = AuthFactory.create_auth_provider(settings)
        await provider.refresh_token()

    try:
        asyncio.run(run())
    except AuthError as e:
        click.echo(f"❌ Refresh failed: {user_message(e)}", err=True)
        sys.exit(1)

    click.echo("✓ Token refreshed")


@main.command()
def logout() -> None:
    """Delete cached OAuth2 credentials from every backend."""
    settings = _load_settings()
    storage = AuthFactory.create_token_storage(settings)
    asyncio.run(storage.delete_tokens())
    click.echo("✓ Cached credentials removed")


if __name__ == "__main__":
    main()
