"""Middleware module for the Google Drive MCP token vault."""

from gdrive_mcp.middleware.audit_logger import (
    AuditEntry,
    AuditEvent,
    AuditLogger,
    hash_token,
)

__all__ = [
    "AuditLogger",
    "AuditEntry",
    "AuditEvent",
    "hash_token",
]
