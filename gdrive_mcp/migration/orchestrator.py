"""One-shot workflows for legacy migration and key rotation.

These run from the command line, not inside the long-running server. Each
workflow backs up the token file before touching it, verifies its output
with a full decrypt and reports the step that failed through
``MigrationError.step``.

Running a rotation against a token file that a live server instance is
also writing is not supported: there is no cross-process locking.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from gdrive_mcp.auth.key_rotation import KeyRotationManager, version_number
from gdrive_mcp.auth.models import TokenData, now_ms
from gdrive_mcp.auth.oauth import WORKSPACE_SCOPES
from gdrive_mcp.auth.token_manager import TokenManager, secure_delete
from gdrive_mcp.middleware.audit_logger import AuditEvent, AuditLogger
from gdrive_mcp.utils.encryption import decrypt_data, unpack_payload
from gdrive_mcp.utils.errors import (
    GDriveMCPError,
    LegacyTokenFormatError,
    MigrationError,
)

logger = logging.getLogger(__name__)

# Scopes assumed for legacy files that never recorded theirs
LEGACY_DEFAULT_SCOPES = WORKSPACE_SCOPES[:5]
LEGACY_DEFAULT_EXPIRY_MS = 60 * 60 * 1000


@dataclass
class MigrationReport:
    """Outcome of a legacy migration."""

    migrated: bool
    message: str
    key_version: str | None = None
    backup_path: Path | None = None


@dataclass
class RotationReport:
    """Outcome of a key rotation."""

    rotated: bool
    message: str
    previous_version: str | None = None
    new_version: str | None = None
    backup_path: Path | None = None


@dataclass
class VerificationReport:
    """Outcome of a dry-run decrypt of the token file."""

    success: bool
    current_version: str | None
    registered_versions: list[str]
    stored_version: str | None = None
    fields: dict[str, bool] = field(default_factory=dict)
    expired: bool | None = None
    expiry: str | None = None
    error: str | None = None


class MigrationOrchestrator:
    """Runs migrate, cleanup, rotate and verify against one token store.

    Example:
        >>> orchestrator = MigrationOrchestrator(store, keys, audit, backup_dir)
        >>> orchestrator.migrate(legacy_secret).migrated
        True
    """

    def __init__(
        self,
        token_manager: TokenManager,
        key_manager: KeyRotationManager,
        audit_logger: AuditLogger,
        backup_dir: Path,
    ) -> None:
        self._tokens = token_manager
        self._keys = key_manager
        self._audit = audit_logger
        self._backup_dir = backup_dir

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    # =========================================================================
    # Legacy migration
    # =========================================================================

    def migrate(self, legacy_secret: bytes | bytearray) -> MigrationReport:
        """Convert a legacy token file to a versioned envelope.

        The legacy file is decrypted with the raw primary secret (legacy
        files were written without key derivation), re-encrypted under the
        current key version and verified in memory before the live file is
        replaced. The replacement is then re-read and verified; on failure
        the backup is restored.

        Running this on a store that is already versioned, or on a missing
        store, changes nothing.

        Raises:
            MigrationError: Naming the step that failed.
        """
        try:
            content = self._tokens.read_raw()
            if content is None:
                logger.info(
                    "No tokens found at %s; nothing to migrate", self._tokens.token_path
                )
                return MigrationReport(migrated=False, message="No tokens found")
            envelope = self._tokens.parse_envelope(content)
        except LegacyTokenFormatError:
            logger.info("Legacy token format detected; migrating")
        except GDriveMCPError as e:
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, "detect", e)
            raise MigrationError(
                "Token file is not in a recognized format",
                step="detect",
                details={"error": e.message},
            ) from e
        else:
            logger.info("Tokens already in versioned format (%s)", envelope.version)
            return MigrationReport(
                migrated=False,
                message="Tokens already in versioned format",
                key_version=envelope.version,
            )

        backup_path = self._backup(content)

        try:
            tokens = self._decrypt_legacy(content, legacy_secret)
        except MigrationError as e:
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, e.step, e)
            raise
        except GDriveMCPError as e:
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, "decrypt_legacy", e)
            raise MigrationError(
                "Failed to decrypt legacy tokens",
                step="decrypt_legacy",
                details={"error": e.message, "backup": str(backup_path)},
            ) from e

        plaintext = tokens.model_dump_json()
        try:
            replacement = self._tokens.encrypt(plaintext)
            if self._tokens.decrypt(replacement) != plaintext:
                raise MigrationError("Round trip produced different data", step="encrypt")
        except GDriveMCPError as e:
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, "encrypt", e)
            raise MigrationError(
                "Failed to encrypt tokens in versioned format",
                step="encrypt",
                details={"error": e.message, "backup": str(backup_path)},
            ) from e

        try:
            self._tokens.write_raw(replacement.to_json())
        except OSError as e:
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, "write", e)
            raise MigrationError(
                "Failed to write versioned tokens",
                step="write",
                details={"error": str(e), "backup": str(backup_path)},
            ) from e

        self._verify_written(tokens, content, backup_path)

        self._audit.log_event(
            AuditEvent.TOKENS_MIGRATED,
            token=tokens.access_token,
            metadata={
                "fromFormat": "legacy",
                "keyVersion": replacement.version,
                "backup": str(backup_path),
            },
        )
        logger.info(
            "Migration complete: tokens now under key version %s", replacement.version
        )
        return MigrationReport(
            migrated=True,
            message="Tokens migrated to versioned format",
            key_version=replacement.version,
            backup_path=backup_path,
        )

    def _decrypt_legacy(
        self, content: str, legacy_secret: bytes | bytearray
    ) -> TokenData:
        """Decrypt a legacy flat payload and fill in the fields it lacks."""
        payload = content.strip()
        if payload.startswith('"'):
            payload = json.loads(payload)

        iv, tag, ciphertext = unpack_payload(payload)
        plaintext = decrypt_data(iv, tag, ciphertext, legacy_secret)

        try:
            legacy: Any = json.loads(plaintext)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MigrationError(
                "Legacy tokens are not valid JSON", step="decrypt_legacy"
            ) from e
        if not isinstance(legacy, dict):
            raise MigrationError(
                "Legacy tokens are not a JSON object", step="decrypt_legacy"
            )

        try:
            return TokenData(
                access_token=legacy.get("access_token") or "",
                refresh_token=legacy.get("refresh_token") or None,
                expiry_date=legacy.get("expiry_date") or now_ms() + LEGACY_DEFAULT_EXPIRY_MS,
                token_type=legacy.get("token_type") or "Bearer",
                scope=legacy.get("scope") or " ".join(LEGACY_DEFAULT_SCOPES),
            )
        except PydanticValidationError as e:
            raise MigrationError(
                "Legacy tokens are incomplete",
                step="convert",
                details={"errors": [err["loc"] for err in e.errors()]},
            ) from e

    def _verify_written(
        self, expected: TokenData, original: str, backup_path: Path
    ) -> None:
        """Re-read the live file; restore the original content on mismatch."""
        try:
            loaded = self._tokens.load_tokens()
            if loaded != expected:
                raise MigrationError("Stored tokens differ from migrated tokens", step="verify")
        except GDriveMCPError as e:
            logger.error("Verification failed; restoring %s", backup_path)
            self._tokens.write_raw(original)
            self._audit_failure(AuditEvent.TOKENS_MIGRATED, "verify", e)
            raise MigrationError(
                "Verification of migrated tokens failed; original restored",
                step="verify",
                details={"error": e.message, "backup": str(backup_path)},
            ) from e

    def cleanup_legacy(self) -> list[Path]:
        """Securely delete legacy-format backups once the live store verifies.

        Returns:
            Paths of the removed backups.

        Raises:
            MigrationError: If the live store does not decrypt.
        """
        report = self.verify()
        if not report.success:
            raise MigrationError(
                "Refusing to remove legacy tokens without a verified versioned store",
                step="verify",
                details={"error": report.error},
            )

        removed: list[Path] = []
        for path in sorted(self._backup_dir.glob("tokens-*.json")):
            try:
                self._tokens.parse_envelope(path.read_text(encoding="utf-8"))
            except LegacyTokenFormatError:
                if secure_delete(path):
                    removed.append(path)
            except GDriveMCPError:
                logger.warning("Skipping unrecognized backup %s", path)

        if removed:
            self._audit.log_event(
                AuditEvent.LEGACY_TOKENS_REMOVED,
                metadata={
                    "removed": [str(p) for p in removed],
                    "reason": "Post-migration cleanup",
                },
            )
        logger.info("Removed %d legacy backup(s)", len(removed))
        return removed

    # =========================================================================
    # Key rotation
    # =========================================================================

    def rotate(
        self,
        new_version: str | None = None,
        secret: bytes | bytearray | None = None,
        iterations: int | None = None,
    ) -> RotationReport:
        """Re-encrypt the stored tokens under a new key version.

        The new version defaults to the label after the current one. It is
        registered from ``secret`` (with ``iterations``, or the registry
        default) unless already registered. The current
        pointer moves only after the re-encrypted file has replaced the old
        one; any earlier failure unregisters a version registered here and
        leaves the old version authoritative.

        Raises:
            MigrationError: Naming the step that failed.
        """
        previous = self._keys.current_version
        if previous is None:
            raise MigrationError("No current key version configured", step="resolve")
        target = new_version or f"v{version_number(previous) + 1}"

        try:
            envelope = self._tokens.load_envelope()
        except GDriveMCPError as e:
            raise MigrationError(
                "Cannot read stored tokens", step="load", details={"error": e.message}
            ) from e
        if envelope is None:
            logger.info("No tokens found to rotate")
            return RotationReport(
                rotated=False, message="No tokens found", previous_version=previous
            )
        if envelope.version == target:
            raise MigrationError(
                f"Stored tokens are already encrypted under {target}",
                step="resolve",
                details={"storedVersion": envelope.version},
            )

        registered_here = False
        if not self._keys.has_version(target):
            if secret is None:
                raise MigrationError(
                    f"No key configured for {target}",
                    step="resolve",
                    details={
                        "hint": f"Set GDRIVE_TOKEN_ENCRYPTION_KEY_V{version_number(target)}"
                    },
                )
            try:
                self._keys.register_key(target, secret, iterations=iterations)
            except GDriveMCPError as e:
                raise MigrationError(
                    f"Failed to register key {target}",
                    step="register",
                    details={"error": e.message},
                ) from e
            registered_here = True

        content = self._tokens.read_raw() or ""
        backup_path = self._backup(content)

        self._audit.log_event(
            AuditEvent.KEY_ROTATION_INITIATED,
            metadata={"fromVersion": envelope.version, "toVersion": target},
        )

        try:
            self._tokens.migrate_tokens_to_new_key(envelope.version, target)
        except GDriveMCPError as e:
            if registered_here:
                self._keys.delete_key(target)
            self._audit_failure(AuditEvent.KEY_ROTATION_COMPLETED, "reencrypt", e)
            raise MigrationError(
                "Failed to re-encrypt tokens under the new key",
                step="reencrypt",
                details={"error": e.message, "backup": str(backup_path)},
            ) from e

        self._keys.set_current_version(target)
        self._audit.log_event(
            AuditEvent.KEY_ROTATION_COMPLETED,
            metadata={"fromVersion": envelope.version, "toVersion": target},
        )
        logger.info("Key rotation complete: %s -> %s", envelope.version, target)
        return RotationReport(
            rotated=True,
            message="Tokens re-encrypted under the new key",
            previous_version=envelope.version,
            new_version=target,
            backup_path=backup_path,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(self) -> VerificationReport:
        """Decrypt the stored tokens without changing anything."""
        report = VerificationReport(
            success=False,
            current_version=self._keys.current_version,
            registered_versions=self._keys.list_versions(),
        )
        try:
            envelope = self._tokens.load_envelope()
            if envelope is None:
                report.error = "No tokens found"
                return report
            report.stored_version = envelope.version
            tokens = TokenData.model_validate_json(self._tokens.decrypt(envelope))
        except GDriveMCPError as e:
            report.error = e.message
            return report
        except PydanticValidationError:
            report.error = "Decrypted data is not valid token data"
            return report

        report.success = True
        report.fields = {
            "access_token": bool(tokens.access_token),
            "refresh_token": bool(tokens.refresh_token),
            "expiry_date": bool(tokens.expiry_date),
            "token_type": bool(tokens.token_type),
            "scope": bool(tokens.scope),
        }
        report.expired = tokens.is_expired()
        report.expiry = datetime.fromtimestamp(tokens.expiry_date / 1000, UTC).isoformat()
        return report

    # =========================================================================
    # Helpers
    # =========================================================================

    def _backup(self, content: str) -> Path:
        """Write an owner-only timestamped copy of the token file."""
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self._backup_dir / f"tokens-{timestamp}.json"
        try:
            self._backup_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as e:
            raise MigrationError(
                f"Failed to create backup: {e}",
                step="backup",
                details={"path": str(path)},
            ) from e
        logger.info("Backed up tokens to %s", path)
        return path

    def _audit_failure(self, event: AuditEvent, step: str, error: Exception) -> None:
        self._audit.log_event(
            event,
            success=False,
            metadata={"step": step, "error_type": type(error).__name__},
        )


__all__ = [
    "LEGACY_DEFAULT_SCOPES",
    "MigrationOrchestrator",
    "MigrationReport",
    "RotationReport",
    "VerificationReport",
]
