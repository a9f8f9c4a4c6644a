"""Command-line interface for dbx-mcp."""

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from dbx_mcp.__version__ import __version__
from dbx_mcp.auth import SecretStore, TokenManager, TokenStatus, TokenStorage
from dbx_mcp.auth.secret_store import generate_encryption_key
from dbx_mcp.config import Settings, load_env_file
from dbx_mcp.errors import ConfigurationError, DbxMcpError

ENV_TEMPLATE = """\
# Dropbox API configuration
DROPBOX_APP_KEY={app_key}
DROPBOX_APP_SECRET='{app_secret}'
DROPBOX_REDIRECT_URI={redirect_uri}
TOKEN_ENCRYPTION_KEY={encryption_key}

# Token configuration
TOKEN_REFRESH_THRESHOLD_MINUTES=5
MAX_TOKEN_REFRESH_RETRIES=3
TOKEN_REFRESH_RETRY_DELAY_MS=1000
TOKEN_STORE_PATH={token_store_path}

# Deletion safety
DROPBOX_RECYCLE_BIN_PATH=/.recycle_bin
DROPBOX_MAX_DELETES_PER_DAY=100
DROPBOX_RETENTION_DAYS=30
DROPBOX_ALLOWED_PATHS=/
DROPBOX_BLOCKED_PATHS=/.recycle_bin,/.system
"""


def _load_settings() -> Settings:
    load_env_file()
    try:
        return Settings.from_env()
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e.message}")
        sys.exit(1)


def _build_storage(settings: Settings) -> TokenStorage:
    try:
        return TokenStorage(settings.secret_store(), settings.tokens.store_path)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e.message}")
        click.echo("Run 'dbx-mcp setup' to generate TOKEN_ENCRYPTION_KEY.")
        sys.exit(1)


def _build_manager(settings: Settings) -> TokenManager:
    return TokenManager.from_settings(settings, _build_storage(settings))


def _format_expiry(expires_at_ms: int) -> str:
    expires = datetime.fromtimestamp(expires_at_ms / 1000, tz=timezone.utc)
    return expires.strftime("%Y-%m-%d %H:%M:%S UTC")


async def _exchange(manager: TokenManager, code: str, verifier: str) -> None:
    try:
        credential = await manager.exchange_code_for_tokens(code, verifier)
    finally:
        await manager.close()
    click.echo("✓ Successfully obtained and stored access token")
    click.echo(f"  Access token expires: {_format_expiry(credential.expires_at)}")
    click.echo(f"  Scopes: {', '.join(credential.scope)}")


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Dropbox MCP Server - Connect MCP clients to a Dropbox account.

    Provides tools to list, upload, download, move, copy, search, share and
    safely delete Dropbox files, with OAuth2 PKCE authentication and
    encrypted token storage.
    """
    pass


@main.command()
@click.option("--app-key", envvar="DROPBOX_APP_KEY", help="Dropbox app key")
@click.option("--app-secret", envvar="DROPBOX_APP_SECRET", help="Dropbox app secret")
@click.option(
    "--redirect-uri",
    envvar="DROPBOX_REDIRECT_URI",
    default="http://localhost",
    show_default=True,
    help="Redirect URI registered with the Dropbox app",
)
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path(".env"),
    show_default=True,
    help="Where to write the generated configuration",
)
@click.option("--no-browser", is_flag=True, help="Print the authorization URL instead of opening it")
def setup(
    app_key: str | None,
    app_secret: str | None,
    redirect_uri: str,
    env_file: Path,
    no_browser: bool,
) -> None:
    """Set up Dropbox OAuth authentication.

    This will:
    1. Generate TOKEN_ENCRYPTION_KEY
    2. Write a .env file with the app secret encrypted
    3. Run the authorization flow and store tokens in .tokens.json
    """
    if env_file.exists() and not click.confirm(f"{env_file} exists. Overwrite?"):
        return

    if not app_key:
        app_key = click.prompt("App Key")
    if not app_secret or SecretStore.looks_encrypted(app_secret):
        app_secret = click.prompt("App Secret", hide_input=True)

    encryption_key = generate_encryption_key()
    store = SecretStore(encryption_key)
    encrypted_secret = json.dumps(store.encrypt(app_secret).model_dump(by_alias=True))
    token_store_path = Path.cwd() / ".tokens.json"

    env_file.write_text(
        ENV_TEMPLATE.format(
            app_key=app_key,
            app_secret=encrypted_secret,
            redirect_uri=redirect_uri,
            encryption_key=encryption_key,
            token_store_path=token_store_path,
        )
    )
    env_file.chmod(0o600)
    click.echo(f"✓ Created {env_file} with encrypted app secret")

    storage = TokenStorage(store, token_store_path)
    backup = storage.backup_and_clear()
    if backup:
        click.echo(f"Backed up existing tokens file to: {backup}")

    manager = TokenManager(
        storage,
        app_key=app_key,
        app_secret=app_secret,
        redirect_uri=redirect_uri,
    )
    url, verifier = manager.generate_auth_url()

    click.echo("")
    if no_browser:
        click.echo("Open this URL to authorize the application:")
    else:
        click.echo("Opening authorization URL in your browser...")
        click.launch(url)
    click.echo(url)
    click.echo("")
    click.echo("After authorization, copy the code shown by Dropbox (or the")
    click.echo("'code' parameter of the redirect URL) and paste it here.")
    code = click.prompt("Authorization code").strip()

    try:
        asyncio.run(_exchange(manager, code, verifier))
    except DbxMcpError as e:
        click.echo(f"❌ Error exchanging authorization code for tokens: {e.message}")
        click.echo("Please try the setup process again.")
        sys.exit(1)

    click.echo("")
    click.echo("✓ Setup completed successfully!")
    click.echo("Run 'dbx-mcp doctor' to verify setup.")
    click.echo("If you get decryption errors later, run 'dbx-mcp reset-tokens'.")


@main.command("auth-url")
def auth_url() -> None:
    """Print an authorization URL and its PKCE code verifier.

    Pass both the code Dropbox returns and the verifier to 'dbx-mcp exchange-code'.
    """
    settings = _load_settings()
    manager = _build_manager(settings)
    try:
        url, verifier = manager.generate_auth_url()
    except ConfigurationError as e:
        click.echo(f"❌ {e.message}")
        sys.exit(1)

    click.echo("Authorization URL:")
    click.echo(url)
    click.echo("")
    click.echo(f"Code verifier: {verifier}")


@main.command("exchange-code")
@click.option("--code", prompt="Authorization code", help="Code from the redirect URL")
@click.option("--verifier", prompt="Code verifier", help="Verifier printed by auth-url")
def exchange_code(code: str, verifier: str) -> None:
    """Exchange an authorization code for tokens."""
    settings = _load_settings()
    manager = _build_manager(settings)
    try:
        asyncio.run(_exchange(manager, code.strip(), verifier.strip()))
    except DbxMcpError as e:
        click.echo(f"❌ Error exchanging code for tokens: {e.message}")
        sys.exit(1)


@main.command("reset-tokens")
def reset_tokens() -> None:
    """Back up and remove the token store.

    Use after rotating TOKEN_ENCRYPTION_KEY or when the token file is
    corrupted; the next run needs a new authorization.
    """
    settings = _load_settings()
    storage = _build_storage(settings)
    backup = storage.backup_and_clear()
    if backup is None:
        click.echo(f"No token file found at {storage.token_path}")
        return
    click.echo(f"✓ Backed up tokens file to: {backup}")
    click.echo("Run 'dbx-mcp setup' or 'dbx-mcp auth-url' to re-authorize.")


@main.command()
def mcp() -> None:
    """Start the MCP server over stdio.

    Configuration is validated first; the server refuses to start without a
    usable credential. Run 'dbx-mcp setup' if not already authenticated.
    """
    from dbx_mcp.server import main as server_main

    settings = _load_settings()
    try:
        settings.require_oauth()
    except ConfigurationError as e:
        click.echo(f"❌ {e.message}", err=True)
        sys.exit(1)

    if not settings.dropbox.access_token:
        status = _build_manager(settings).status()
        if status == TokenStatus.MISSING:
            click.echo("❌ Not authenticated. Run 'dbx-mcp setup' first.", err=True)
            sys.exit(1)
        if status == TokenStatus.INVALID:
            click.echo(
                "❌ Token file corrupted or encrypted with another key. "
                "Run 'dbx-mcp reset-tokens' and re-authenticate.",
                err=True,
            )
            sys.exit(1)

    try:
        click.echo("Starting Dropbox MCP server...", err=True)
        server_main(settings)
    except KeyboardInterrupt:
        click.echo("\nServer stopped.", err=True)
    except DbxMcpError as e:
        click.echo(f"❌ Server error: {e.message}", err=True)
        sys.exit(1)


@main.command()
def doctor() -> None:
    """Check configuration and authentication status."""
    settings = _load_settings()

    click.echo("Dropbox MCP Status:")
    click.echo("")

    click.echo("Configuration:")
    if settings.dropbox.access_token:
        click.echo("  ✓ Static DROPBOX_ACCESS_TOKEN set (refresh disabled)")
    try:
        settings.require_oauth()
        click.echo("  ✓ Required variables set")
    except ConfigurationError as e:
        click.echo(f"  ❌ {e.message}")
        click.echo("")
        click.echo("Run 'dbx-mcp setup' to configure.")
        sys.exit(1)

    safety = settings.safety
    click.echo(f"  Recycle bin: {safety.recycle_bin_path}")
    click.echo(f"  Retention: {safety.retention_days} days")
    click.echo(f"  Max deletes per day: {safety.max_deletes_per_day}")
    click.echo(f"  Allowed paths: {', '.join(safety.allowed_paths)}")
    click.echo(f"  Blocked paths: {', '.join(safety.blocked_paths)}")
    click.echo("")

    if settings.dropbox.access_token:
        click.echo("✓ Ready to use!")
        return

    manager = _build_manager(settings)
    status = manager.status()

    click.echo("Authentication:")
    click.echo(f"  Token file: {settings.tokens.store_path}")

    if status == TokenStatus.MISSING:
        click.echo("  ❌ Not authenticated")
        click.echo("")
        click.echo("Run 'dbx-mcp setup' to authenticate.")
        sys.exit(1)
    elif status == TokenStatus.INVALID:
        click.echo("  ❌ Token file corrupted or encrypted with another key")
        click.echo("")
        click.echo("Run 'dbx-mcp reset-tokens', then 'dbx-mcp setup'.")
        sys.exit(1)

    credential = manager.load()
    if status == TokenStatus.EXPIRED:
        click.echo("  ⚠️  Token expired (will refresh automatically on use)")
    else:
        click.echo("  ✓ Authenticated")
    if credential is not None:
        click.echo(f"  Token expires: {_format_expiry(credential.expires_at)}")
        click.echo(f"  Scopes: {', '.join(credential.scope) or 'none'}")
        click.echo(f"  Refresh token: {'present' if credential.can_refresh else 'missing'}")

    click.echo("")
    click.echo("✓ Ready to use!")


if __name__ == "__main__":
    main()
