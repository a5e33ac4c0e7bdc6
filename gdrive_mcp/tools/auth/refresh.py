"""Refresh tool - Force an access token refresh.

Concurrent calls share one in-flight refresh.
"""

from __future__ import annotations

import logging
from typing import Any

from gdrive_mcp.auth.auth_manager import AuthManager
from gdrive_mcp.tools.base import build_success_response, error_response_from
from gdrive_mcp.utils.errors import GDriveMCPError

logger = logging.getLogger(__name__)


async def refresh_token(auth_manager: AuthManager) -> dict[str, Any]:
    """Refresh the access token now.

    Returns:
        Success: {status, data: {state, attempts, expires_in_seconds}, message}
        Error: {status, error, error_code, details}
    """
    try:
        result = await auth_manager.refresh_token()
    except GDriveMCPError as e:
        logger.warning("Manual token refresh failed: %s", e)
        response = error_response_from(e)
        response["state"] = auth_manager.state.value
        return response

    return build_success_response(
        data={
            "state": result.state.value,
            "attempts": result.attempts,
            "expires_in_seconds": result.tokens.seconds_until_expiry(),
        },
        message="Access token refreshed",
    )
