"""Entry point for the Google Drive MCP server and its maintenance commands.

Commands:
    serve            Run the MCP server (default)
    auth             Run the browser consent flow and store tokens
    migrate-tokens   Convert a legacy token file to the versioned format
    rotate-key       Re-encrypt stored tokens under the next key version
    verify-keys      Decrypt stored tokens without changing anything
    health           Print a JSON health report (exit 0/1/2)
    generate-key     Print a new base64 encryption key
"""

from __future__ import annotations

import base64
import json
import logging
import os
import sys
from typing import NoReturn

import click
from dotenv import load_dotenv

from gdrive_mcp.auth.key_derivation import clear_sensitive_data, validate_key_strength
from gdrive_mcp.config import Settings, key_var_name, load_settings
from gdrive_mcp.health import HealthStatus, check_health
from gdrive_mcp.middleware.audit_logger import AuditEvent
from gdrive_mcp.services import Services, build_services
from gdrive_mcp.utils.encryption import generate_key
from gdrive_mcp.utils.errors import GDriveMCPError, MigrationError

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure logging to stderr (STDIO-safe).

    Sends all logs to stderr so they don't interfere with MCP's
    STDIO transport which uses stdout for JSON-RPC messages.

    Respects LOG_LEVEL env var (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = logging.getLevelNamesMapping().get(log_level_str, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    # Reduce noise from Google and HTTP libraries
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _fail(message: str, error: Exception | None = None) -> NoReturn:
    """Report an error on stderr and exit non-zero."""
    click.echo(f"Error: {message}", err=True)
    if isinstance(error, GDriveMCPError) and error.details:
        for key, value in error.details.items():
            click.echo(f"  {key}: {value}", err=True)
    sys.exit(1)


def _settings() -> Settings:
    try:
        return load_settings()
    except GDriveMCPError as e:
        _fail(e.message, e)


def _services(settings: Settings | None = None) -> Services:
    """Build services and zero the raw secrets once keys are derived."""
    try:
        services = build_services(settings or _settings())
    except GDriveMCPError as e:
        _fail(e.message, e)
    services.settings.clear_secrets()
    return services


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """Google Drive MCP Server - encrypted token storage with key rotation.

    Runs the MCP server when no command is given.
    """
    # Load .env file if present
    load_dotenv()
    configure_logging()

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@main.command()
def serve() -> None:
    """Run the MCP server with the configured transport."""
    settings = _settings()

    from gdrive_mcp.server import create_server

    mcp = create_server(settings)

    match settings.transport:
        case "streamable-http":
            logger.info("Starting Google Drive MCP Server with streamable-http transport")
            mcp.run(transport="streamable-http")
        case _:
            logger.info("Starting Google Drive MCP Server with STDIO transport")
            mcp.run(transport="stdio")


@main.command()
def auth() -> None:
    """Sign in with Google and store encrypted tokens."""
    services = _services()

    try:
        oauth = services.oauth_client()
        click.echo("Opening browser for Google consent...", err=True)
        tokens = oauth.run_local_server()
        services.tokens.save_tokens(tokens, AuditEvent.TOKEN_ACQUIRED)
    except GDriveMCPError as e:
        _fail(f"Authentication failed: {e.message}", e)

    click.echo("Authentication successful!")
    click.echo(f"Tokens stored at: {services.tokens.token_path}")


@main.command("migrate-tokens")
@click.option(
    "--cleanup",
    is_flag=True,
    help="Remove legacy-format backups once the versioned store verifies",
)
def migrate_tokens(cleanup: bool) -> None:
    """Convert a legacy token file to the versioned format."""
    settings = _settings()
    # Legacy files were encrypted with the raw primary secret
    legacy_secret = settings.primary_secret
    orchestrator = _services(settings).orchestrator()

    try:
        if cleanup:
            removed = orchestrator.cleanup_legacy()
            click.echo(f"Removed {len(removed)} legacy backup(s)")
            return
        report = orchestrator.migrate(legacy_secret)
    except MigrationError as e:
        _fail(f"Migration failed at step '{e.step}': {e.message}", e)
    except GDriveMCPError as e:
        _fail(f"Migration failed: {e.message}", e)
    finally:
        clear_sensitive_data(legacy_secret)

    click.echo(report.message)
    if report.migrated:
        click.echo(f"  Key version: {report.key_version}")
        click.echo(f"  Backup: {report.backup_path}")
        click.echo("Next: run 'verify-keys', then 'migrate-tokens --cleanup'")


@main.command("rotate-key")
@click.argument("version", required=False)
def rotate_key(version: str | None) -> None:
    """Re-encrypt stored tokens under VERSION (default: the next version).

    Stop any running server first; the token file is not locked.
    """
    services = _services()

    try:
        report = services.orchestrator().rotate(new_version=version)
    except MigrationError as e:
        _fail(f"Key rotation failed at step '{e.step}': {e.message}", e)
    except GDriveMCPError as e:
        _fail(f"Key rotation failed: {e.message}", e)

    click.echo(report.message)
    if report.rotated:
        click.echo(f"  Previous key version: {report.previous_version}")
        click.echo(f"  New key version: {report.new_version}")
        click.echo(f"  Backup: {report.backup_path}")
        click.echo(
            f"Next: set GDRIVE_TOKEN_CURRENT_KEY_VERSION={report.new_version} "
            f"and keep {key_var_name(report.previous_version or 'v1')} "
            "until the rotation is confirmed"
        )


@main.command("verify-keys")
def verify_keys() -> None:
    """Check that stored tokens decrypt with the configured keys."""
    report = _services().orchestrator().verify()

    click.echo(f"Current key version: {report.current_version}")
    click.echo(f"Registered key versions: {', '.join(report.registered_versions)}")
    if not report.success:
        _fail(f"Verification failed: {report.error}")

    click.echo(f"Stored tokens decrypted with key version {report.stored_version}")
    for name, present in report.fields.items():
        click.echo(f"  {name}: {'present' if present else 'missing'}")
    click.echo(f"Token expiry: {report.expiry} ({'expired' if report.expired else 'valid'})")


@main.command()
def health() -> None:
    """Print a JSON health report; exit 0 healthy, 1 degraded, 2 unhealthy."""
    try:
        services = build_services(load_settings())
        services.settings.clear_secrets()
    except GDriveMCPError as e:
        click.echo(
            json.dumps({"status": HealthStatus.UNHEALTHY.value, "error": e.message}),
            err=True,
        )
        sys.exit(HealthStatus.UNHEALTHY.exit_code)

    result = check_health(
        services.tokens,
        oauth_path=services.settings.oauth_path,
        expiry_buffer_ms=services.settings.preemptive_refresh_ms,
    )
    click.echo(result.to_json())
    sys.exit(result.status.exit_code)


@main.command("generate-key")
def generate_key_command() -> None:
    """Print a random base64 32-byte key for GDRIVE_TOKEN_ENCRYPTION_KEY."""
    key = generate_key()
    while not validate_key_strength(key):
        key = generate_key()
    click.echo(base64.b64encode(key).decode("ascii"))


__all__ = ["main", "configure_logging"]


if __name__ == "__main__":
    main()
