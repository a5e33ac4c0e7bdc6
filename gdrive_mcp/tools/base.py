"""Response builders shared by the MCP tools.

Every tool returns either a success envelope ``{status, data, message}``
or an error envelope ``{status, error, error_code, ...}``.
"""

from __future__ import annotations

from typing import Any

from gdrive_mcp.utils.errors import GDriveMCPError


class ResponseKeys:
    """Standard keys for tool responses."""

    STATUS = "status"
    DATA = "data"
    MESSAGE = "message"
    ERROR = "error"
    ERROR_CODE = "error_code"
    DETAILS = "details"


def build_success_response(data: Any, message: str | None = None) -> dict[str, Any]:
    """Build standardized success response.

    Args:
        data: Tool-specific payload.
        message: Optional human-readable message.
    """
    response: dict[str, Any] = {
        ResponseKeys.STATUS: "success",
        ResponseKeys.DATA: data,
    }
    if message:
        response[ResponseKeys.MESSAGE] = message
    return response


def build_error_response(
    error: str,
    error_code: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build standardized error response.

    Args:
        error: Human-readable error message.
        error_code: Optional error code for programmatic handling.
        details: Optional additional error details.
    """
    response: dict[str, Any] = {
        ResponseKeys.STATUS: "error",
        ResponseKeys.ERROR: error,
    }
    if error_code:
        response[ResponseKeys.ERROR_CODE] = error_code
    if details:
        response[ResponseKeys.DETAILS] = details
    return response


def error_response_from(error: GDriveMCPError) -> dict[str, Any]:
    """Render a domain error, using its class name as the error code."""
    return build_error_response(
        error=error.message,
        error_code=type(error).__name__,
        details=dict(error.details) or None,
    )


__all__ = [
    "ResponseKeys",
    "build_error_response",
    "build_success_response",
    "error_response_from",
]
