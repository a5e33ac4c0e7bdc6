"""FastMCP server for Google Drive MCP.

The always-running service: at startup the lifespan builds the services
from configuration, loads the stored tokens and starts proactive refresh
monitoring; at shutdown it stops the monitor and lets any in-flight refresh
finish.

Registered tools:
- auth_status: Report the session state
- refresh_token: Force an access token refresh
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from mcp.types import ToolAnnotations

from gdrive_mcp.auth.auth_manager import AuthManager
from gdrive_mcp.config import Settings
from gdrive_mcp.services import build_services
from gdrive_mcp.tools import get_auth_status, refresh_token

logger = logging.getLogger(__name__)


# =============================================================================
# Lifespan Context Manager
# =============================================================================


def make_lifespan(settings: Settings):
    """Create the lifespan context manager for a given configuration."""

    @asynccontextmanager
    async def server_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
        """Construct services, load tokens and run the expiry monitor.

        Configuration, legacy-format and cryptographic errors propagate:
        the server must not start serving with unusable key material.

        Yields:
            Context dict holding the AuthManager.
        """
        logger.info("Google Drive MCP server starting up...")
        services = build_services(settings)
        settings.clear_secrets()
        auth_manager = services.auth_manager()
        state = await auth_manager.initialize()
        logger.info("Google Drive MCP server ready (auth state: %s)", state.value)

        try:
            yield {"auth_manager": auth_manager}
        finally:
            logger.info("Google Drive MCP server shutting down...")
            await auth_manager.stop_monitoring()

    return server_lifespan


def _auth_manager(ctx: Context) -> AuthManager:
    return ctx.request_context.lifespan_context["auth_manager"]


# =============================================================================
# Auth Tool Wrappers
# =============================================================================


def _register_auth_tools(mcp: FastMCP) -> None:
    """Register the session tools with the FastMCP server.

    Args:
        mcp: The FastMCP server instance.
    """

    @mcp.tool(
        name="auth_status",
        annotations=ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def auth_status_tool(ctx: Context) -> dict[str, Any]:
        """Check whether the server holds a usable Google session.

        Returns:
            Success response with state, refresh capability, seconds until
            expiry and whether proactive refresh is running.
        """
        return await get_auth_status(_auth_manager(ctx))

    @mcp.tool(
        name="refresh_token",
        annotations=ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
        ),
    )
    async def refresh_token_tool(ctx: Context) -> dict[str, Any]:
        """Refresh the Google access token now.

        Returns:
            Success: {status, data: {state, attempts, expires_in_seconds}}
            Error: {status, error, error_code, details, state}
        """
        return await refresh_token(_auth_manager(ctx))


# =============================================================================
# Server Factory
# =============================================================================


def create_server(settings: Settings) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    server = FastMCP(
        name="gdrive-mcp-server",
        lifespan=make_lifespan(settings),
    )
    _register_auth_tools(server)
    logger.info("Google Drive MCP server created with 2 tools registered")
    return server


__all__ = [
    "create_server",
    "make_lifespan",
]
