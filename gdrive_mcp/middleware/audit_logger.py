"""Append-only audit log for token and key lifecycle events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuditEvent(str, Enum):
    """Kinds of events recorded in the audit log."""

    TOKEN_ACQUIRED = "TOKEN_ACQUIRED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    TOKEN_REVOKED_BY_USER = "TOKEN_REVOKED_BY_USER"
    TOKEN_DELETED_INVALID_GRANT = "TOKEN_DELETED_INVALID_GRANT"
    TOKEN_ENCRYPTED = "TOKEN_ENCRYPTED"
    TOKEN_DECRYPTED = "TOKEN_DECRYPTED"
    KEY_REGISTERED = "KEY_REGISTERED"
    KEY_VERSION_CHANGED = "KEY_VERSION_CHANGED"
    KEY_DELETED = "KEY_DELETED"
    KEY_ROTATION_INITIATED = "KEY_ROTATION_INITIATED"
    KEY_ROTATION_COMPLETED = "KEY_ROTATION_COMPLETED"
    TOKENS_MIGRATED = "TOKENS_MIGRATED"
    LEGACY_TOKENS_REMOVED = "LEGACY_TOKENS_REMOVED"


class AuditEntry(BaseModel):
    """Model for an audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO format timestamp",
    )
    event: AuditEvent = Field(..., description="Event kind")
    user_id: str = Field(default="default", description="User identifier")
    token_hash: str | None = Field(
        default=None,
        description="SHA-256 hex digest of the token involved, never the token",
    )
    success: bool = Field(default=True, description="Whether the event succeeded")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Event details (sensitive values redacted)",
    )


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest used to identify a token in logs."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuditLogger:
    """Audit logger that appends one JSON object per line to a file.

    The file is created with owner-only permissions before the first byte
    is written. Raw tokens never reach the file: callers pass the token and
    only its digest is recorded, and metadata values under sensitive keys
    are replaced wholesale.
    """

    SENSITIVE_KEYS = {
        "password",
        "token",
        "secret",
        "key",
        "credential",
        "access_token",
        "refresh_token",
        "client_secret",
        "authorization",
        "api_key",
        "auth",
        "bearer",
        "private_key",
        "salt",
    }

    def __init__(
        self,
        path: Path,
        user_id: str = "default",
        enabled: bool = True,
    ) -> None:
        """Initialize audit logger.

        Args:
            path: Audit log file location.
            user_id: User identifier recorded on every entry.
            enabled: Whether audit logging is enabled.
        """
        self._path = path
        self._user_id = user_id
        self._enabled = enabled
        self._lock = threading.Lock()
        logger.info("AuditLogger initialized at %s (enabled=%s)", path, enabled)

    @property
    def path(self) -> Path:
        """Location of the audit log file."""
        return self._path

    def _redact_sensitive(self, params: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive values from metadata."""
        redacted: dict[str, Any] = {}
        for key, value in params.items():
            if key.lower() in self.SENSITIVE_KEYS:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted[key] = self._redact_sensitive(value)
            else:
                redacted[key] = value
        return redacted

    def log(self, entry: AuditEntry) -> None:
        """Append an audit entry to the log file.

        Write failures are logged and swallowed so that auditing never
        masks the error being audited.

        Args:
            entry: The audit entry to log.
        """
        if not self._enabled:
            return

        try:
            line = entry.model_dump_json() + "\n"
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(
                    self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600
                )
                with os.fdopen(fd, "a", encoding="utf-8") as handle:
                    # O_CREAT's mode does not apply to an existing file
                    os.fchmod(handle.fileno(), 0o600)
                    handle.write(line)
        except Exception as e:
            logger.error("Failed to write audit log: %s", e)

    def log_event(
        self,
        event: AuditEvent,
        success: bool = True,
        token: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a token or key lifecycle event.

        Args:
            event: Event kind.
            success: Whether the event succeeded.
            token: Token involved, if any. Only its digest is recorded.
            metadata: Additional event details (will be redacted).
        """
        entry = AuditEntry(
            event=event,
            user_id=self._user_id,
            token_hash=hash_token(token) if token else None,
            success=success,
            metadata=self._redact_sensitive(metadata or {}),
        )
        self.log(entry)

    def read_entries(self) -> list[AuditEntry]:
        """Parse every entry currently in the log file."""
        if not self._path.exists():
            return []
        entries = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                entries.append(AuditEntry.model_validate(json.loads(line)))
        return entries


__all__ = [
    "AuditEntry",
    "AuditEvent",
    "AuditLogger",
    "hash_token",
]
