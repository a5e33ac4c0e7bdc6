"""Session tools exposed by the Google Drive MCP server."""

from gdrive_mcp.tools.auth import get_auth_status, refresh_token
from gdrive_mcp.tools.base import (
    build_error_response,
    build_success_response,
    error_response_from,
)

__all__ = [
    "get_auth_status",
    "refresh_token",
    "build_error_response",
    "build_success_response",
    "error_response_from",
]
