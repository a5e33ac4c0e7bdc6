"""Auth status tool - Report the session state without exposing tokens."""

from __future__ import annotations

import logging
from typing import Any

from gdrive_mcp.auth.auth_manager import AuthManager, AuthState
from gdrive_mcp.tools.base import build_success_response

logger = logging.getLogger(__name__)

_MESSAGES = {
    AuthState.AUTHENTICATED: "Authenticated",
    AuthState.TOKEN_EXPIRED: "Access token expired; it will be refreshed on next use",
    AuthState.REFRESH_FAILED: "Token refresh failed; retrying on the next check",
    AuthState.TOKENS_REVOKED: (
        "Refresh token was revoked. Run 'python -m gdrive_mcp auth' to sign in again."
    ),
    AuthState.UNAUTHENTICATED: (
        "Not authenticated. Run 'python -m gdrive_mcp auth' to sign in."
    ),
}


async def get_auth_status(auth_manager: AuthManager) -> dict[str, Any]:
    """Check the authentication state of the server.

    Returns:
        Success response with:
        - state: One of the AuthState values
        - has_refresh_token: Whether the session can be refreshed
        - expires_in_seconds: Seconds until the access token expires
        - monitoring: Whether proactive refresh is running
    """
    status = auth_manager.status()
    logger.debug("Auth status requested: %s", status["state"])
    return build_success_response(
        data=status,
        message=_MESSAGES[AuthState(status["state"])],
    )
