"""Encrypted token store backed by a single versioned envelope file.

Tokens are serialized as JSON, encrypted with AES-256-GCM under the current
key version and wrapped in a VersionedTokenStorage envelope recording the
version, algorithm and key-derivation parameters.

Storage location: ~/.gdrive-mcp-tokens.json (GDRIVE_TOKEN_STORAGE_PATH)

Security considerations:
- Every write goes to an owner-only temporary file in the same directory
  and is renamed over the live file, so readers never see a partial write
- Decryption uses exactly the version named in the envelope and fails
  closed on any mismatch or tamper
- Legacy flat files are detected and refused; they must be migrated
- Audit entries reference tokens by SHA-256 digest only
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from gdrive_mcp.auth.key_derivation import KDF_METHOD, constant_time_compare
from gdrive_mcp.auth.key_rotation import KeyRotationManager, KeyVersion
from gdrive_mcp.auth.models import KeyDerivationInfo, TokenData, VersionedTokenStorage
from gdrive_mcp.middleware.audit_logger import AuditEvent, AuditLogger
from gdrive_mcp.utils.encryption import (
    decrypt_data,
    encrypt_data,
    is_payload,
    pack_payload,
    unpack_payload,
)
from gdrive_mcp.utils.errors import (
    DecryptionError,
    GDriveMCPError,
    LegacyTokenFormatError,
    MalformedEnvelopeError,
    TokenError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_BUFFER_MS = 10 * 60 * 1000


class TokenManager:
    """Owner of the encrypted token file.

    Attributes:
        _keys: Registry used to resolve key versions.
        _token_path: Location of the envelope file.
        _audit: Audit log sink.

    Example:
        >>> manager = TokenManager(keys, Path("tokens.json"), audit)
        >>> manager.save_tokens(TokenData(access_token="ya29...", expiry_date=...))
        >>> manager.load_tokens().access_token
        'ya29...'
    """

    def __init__(
        self,
        key_manager: KeyRotationManager,
        token_path: Path,
        audit_logger: AuditLogger,
    ) -> None:
        """Initialize the token store.

        Args:
            key_manager: Registry of key versions.
            token_path: Envelope file location.
            audit_logger: Audit log sink.
        """
        self._keys = key_manager
        self._token_path = token_path
        self._audit = audit_logger
        self._write_lock = threading.Lock()
        logger.debug("TokenManager initialized at %s", token_path)

    @property
    def token_path(self) -> Path:
        """Location of the envelope file."""
        return self._token_path

    @property
    def key_manager(self) -> KeyRotationManager:
        """Registry of key versions used by this store."""
        return self._keys

    # =========================================================================
    # Envelope encryption
    # =========================================================================

    def encrypt(
        self, plaintext: str | bytes, version: str | None = None
    ) -> VersionedTokenStorage:
        """Encrypt data into a versioned envelope.

        Args:
            plaintext: Data to encrypt. Strings are UTF-8 encoded.
            version: Key version to encrypt under. Defaults to current.

        Returns:
            Envelope tagged with the version actually used.

        Raises:
            KeyVersionNotFoundError: If the version is not registered.
        """
        key = self._keys.get_key(version) if version else self._keys.get_current_key()
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext

        encrypted = encrypt_data(data, key.key)
        return VersionedTokenStorage(
            version=key.version,
            key_derivation=KeyDerivationInfo(
                method=KDF_METHOD,
                iterations=key.iterations,
                salt=base64.b64encode(key.salt).decode("ascii"),
            ),
            data=pack_payload(encrypted),
            key_id=key.key_id,
        )

    def decrypt(self, envelope: VersionedTokenStorage) -> str:
        """Decrypt an envelope with the exact key version it names.

        Args:
            envelope: Envelope to decrypt.

        Returns:
            The decrypted plaintext.

        Raises:
            KeyVersionNotFoundError: If the envelope's version is unknown.
            DecryptionError: If the KDF metadata does not match the
                registered key or authentication fails.
            MalformedEnvelopeError: If the payload is not ``iv:tag:ct``.
        """
        key = self._keys.get_key(envelope.version)
        self._check_key_binding(envelope, key)

        iv, tag, ciphertext = unpack_payload(envelope.data)
        try:
            plaintext = decrypt_data(iv, tag, ciphertext, key.key)
        except ValidationError as e:
            raise MalformedEnvelopeError(
                f"Invalid encrypted data format: {e.message}",
                details={"keyVersion": envelope.version, "field": e.field},
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(
                "Decrypted data is not valid UTF-8",
                details={"keyVersion": envelope.version},
            ) from e

    def _check_key_binding(
        self, envelope: VersionedTokenStorage, key: KeyVersion
    ) -> None:
        """Verify the envelope was produced by this registered key."""
        recorded = envelope.key_derivation
        matches = constant_time_compare(envelope.key_id, key.key_id)
        matches &= recorded.iterations == key.iterations
        try:
            salt = base64.b64decode(recorded.salt, validate=True)
        except ValueError as e:
            raise MalformedEnvelopeError(
                "Envelope salt is not valid base64",
                details={"keyVersion": envelope.version},
            ) from e
        matches &= constant_time_compare(salt, key.salt)

        if not matches:
            raise DecryptionError(
                "Key derivation metadata does not match registered key version",
                details={
                    "keyVersion": envelope.version,
                    "recordedIterations": recorded.iterations,
                    "registeredIterations": key.iterations,
                },
            )

    @staticmethod
    def parse_envelope(content: str) -> VersionedTokenStorage:
        """Classify and parse raw token file content.

        Args:
            content: Raw file content.

        Returns:
            The parsed envelope.

        Raises:
            LegacyTokenFormatError: If the content is a legacy flat string.
            MalformedEnvelopeError: If the content is neither format.
        """
        stripped = content.strip()
        if is_payload(stripped):
            raise LegacyTokenFormatError()

        try:
            raw: Any = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise MalformedEnvelopeError(
                "Token file is neither a versioned envelope nor legacy format",
                details={"error_message": str(e)},
            ) from e

        if isinstance(raw, str) and is_payload(raw):
            raise LegacyTokenFormatError()
        if not isinstance(raw, dict):
            raise MalformedEnvelopeError(
                "Token file does not contain an envelope object",
                details={"type": type(raw).__name__},
            )

        try:
            return VersionedTokenStorage.model_validate(raw)
        except PydanticValidationError as e:
            raise MalformedEnvelopeError(
                "Token file does not match the versioned envelope schema",
                details={"errors": [err["loc"] for err in e.errors()]},
            ) from e

    # =========================================================================
    # Persistence
    # =========================================================================

    def save_tokens(
        self,
        tokens: TokenData | dict[str, Any],
        event: AuditEvent = AuditEvent.TOKEN_ENCRYPTED,
    ) -> VersionedTokenStorage:
        """Encrypt and atomically persist tokens.

        Args:
            tokens: Tokens to store.
            event: Audit event recorded on success.

        Returns:
            The envelope written to disk.

        Raises:
            TokenError: If the token data is invalid or writing fails.
        """
        try:
            token_data = (
                tokens
                if isinstance(tokens, TokenData)
                else TokenData.model_validate(tokens)
            )
        except PydanticValidationError as e:
            self._audit.log_event(
                event, success=False, metadata={"reason": "invalid_token_data"}
            )
            raise TokenError(
                "Invalid token data",
                details={"errors": [err["loc"] for err in e.errors()]},
            ) from e

        try:
            envelope = self.encrypt(token_data.model_dump_json())
            self._atomic_write(envelope.to_json())
        except Exception as e:
            self._audit.log_event(
                event,
                success=False,
                token=token_data.access_token,
                metadata={"error_type": type(e).__name__},
            )
            logger.error("Failed to save tokens: %s", e)
            if isinstance(e, GDriveMCPError):
                raise
            raise TokenError(
                f"Failed to save tokens: {e}",
                details={"path": str(self._token_path), "error_type": type(e).__name__},
            ) from e

        self._audit.log_event(
            event,
            token=token_data.access_token,
            metadata={"keyVersion": envelope.version},
        )
        logger.info("Tokens saved under key version %s", envelope.version)
        return envelope

    def read_raw(self) -> str | None:
        """Return the raw token file content, or None if there is no file.

        Raises:
            MalformedEnvelopeError: If the file is not valid UTF-8.
            TokenError: If the file cannot be read.
        """
        try:
            return self._token_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise MalformedEnvelopeError(
                "Token file is not valid UTF-8 text",
                details={"path": str(self._token_path), "position": e.start},
            ) from e
        except OSError as e:
            raise TokenError(
                f"Failed to read token file: {e}",
                details={"path": str(self._token_path), "error_type": type(e).__name__},
            ) from e

    def load_envelope(self) -> VersionedTokenStorage | None:
        """Read and parse the envelope without decrypting it.

        Raises:
            LegacyTokenFormatError: If the file holds legacy data.
            MalformedEnvelopeError: If the file is unrecognizable.
        """
        content = self.read_raw()
        if content is None:
            return None
        return self.parse_envelope(content)

    def load_tokens(self) -> TokenData | None:
        """Load and decrypt stored tokens.

        Returns:
            The stored tokens, or None if no token file exists.

        Raises:
            LegacyTokenFormatError: If the file must be migrated first.
            CryptoError: If the envelope cannot be decrypted.
            TokenError: If the decrypted data is not valid token data.
        """
        try:
            envelope = self.load_envelope()
            if envelope is None:
                logger.debug("No saved tokens found at %s", self._token_path)
                return None
            tokens = TokenData.model_validate_json(self.decrypt(envelope))
        except LegacyTokenFormatError:
            logger.error("Legacy token format detected at %s", self._token_path)
            self._audit.log_event(
                AuditEvent.TOKEN_DECRYPTED,
                success=False,
                metadata={"reason": "legacy_format"},
            )
            raise
        except PydanticValidationError as e:
            self._audit.log_event(
                AuditEvent.TOKEN_DECRYPTED,
                success=False,
                metadata={"reason": "invalid_token_data"},
            )
            raise TokenError(
                "Decrypted data is not valid token data",
                details={"errors": [err["loc"] for err in e.errors()]},
            ) from e
        except GDriveMCPError as e:
            self._audit.log_event(
                AuditEvent.TOKEN_DECRYPTED,
                success=False,
                metadata={"error_type": type(e).__name__},
            )
            logger.error("Failed to load tokens: %s", e)
            raise

        self._audit.log_event(
            AuditEvent.TOKEN_DECRYPTED,
            token=tokens.access_token,
            metadata={"keyVersion": envelope.version},
        )
        logger.info("Tokens loaded successfully")
        return tokens

    def write_raw(self, content: str) -> None:
        """Atomically replace the token file with raw content.

        Used to restore a backup; bypasses encryption.
        """
        self._atomic_write(content)

    def delete_tokens_on_invalid_grant(self) -> bool:
        """Securely delete tokens after a permanent grant failure.

        Returns:
            True if a token file was deleted, False if none existed.
        """
        deleted = self.delete_tokens(
            AuditEvent.TOKEN_DELETED_INVALID_GRANT,
            reason="invalid_grant error from Google OAuth",
        )
        if deleted:
            logger.warning("Deleted invalid tokens due to invalid_grant error")
        return deleted

    def delete_tokens(
        self,
        event: AuditEvent = AuditEvent.TOKEN_REVOKED_BY_USER,
        reason: str | None = None,
    ) -> bool:
        """Securely delete the token file and record the deletion.

        Idempotent: returns False without an audit entry if no file exists.

        Raises:
            TokenError: If the file exists but cannot be deleted.
        """
        with self._write_lock:
            try:
                deleted = secure_delete(self._token_path)
            except OSError as e:
                self._audit.log_event(
                    event, success=False, metadata={"error_type": type(e).__name__}
                )
                raise TokenError(
                    "Failed to delete token file",
                    details={"path": str(self._token_path), "error": str(e)},
                ) from e

        if not deleted:
            logger.debug("No token file to delete at %s", self._token_path)
            return False

        self._audit.log_event(event, metadata={"reason": reason or event.value})
        return True

    def migrate_tokens_to_new_key(
        self, old_version: str, new_version: str
    ) -> VersionedTokenStorage:
        """Re-encrypt stored tokens from one key version to another.

        The live file is replaced only after the data has been decrypted
        under the old version, re-encrypted under the new one and the new
        envelope verified by a full decrypt. Any failure leaves the file
        untouched.

        Returns:
            The new envelope now on disk.

        Raises:
            TokenError: If there are no stored tokens or the write fails.
            ValidationError: If the stored tokens are not under old_version.
            CryptoError: If decryption or re-encryption fails.
        """
        envelope = self.load_envelope()
        if envelope is None:
            raise TokenError(
                "No stored tokens to re-encrypt",
                details={"path": str(self._token_path)},
            )
        if not constant_time_compare(envelope.version, old_version):
            raise ValidationError(
                f"Stored tokens are encrypted under {envelope.version}, not {old_version}",
                field="old_version",
                details={"stored": envelope.version, "requested": old_version},
            )

        try:
            plaintext = self.decrypt(envelope)
            replacement = self.encrypt(plaintext, version=new_version)
            if self.decrypt(replacement) != plaintext:
                raise DecryptionError(
                    "Re-encrypted tokens failed verification",
                    details={"keyVersion": new_version},
                )
            self._atomic_write(replacement.to_json())
        except (GDriveMCPError, OSError) as e:
            self._audit.log_event(
                AuditEvent.TOKEN_ENCRYPTED,
                success=False,
                metadata={
                    "fromVersion": old_version,
                    "toVersion": new_version,
                    "error_type": type(e).__name__,
                },
            )
            if isinstance(e, GDriveMCPError):
                raise
            raise TokenError(
                f"Failed to write re-encrypted tokens: {e}",
                details={"path": str(self._token_path), "error_type": type(e).__name__},
            ) from e

        tokens = TokenData.model_validate_json(plaintext)
        self._audit.log_event(
            AuditEvent.TOKEN_ENCRYPTED,
            token=tokens.access_token,
            metadata={"fromVersion": old_version, "toVersion": new_version},
        )
        logger.info("Re-encrypted tokens from %s to %s", old_version, new_version)
        return replacement

    # =========================================================================
    # Token checks
    # =========================================================================

    @staticmethod
    def is_token_expired(tokens: TokenData) -> bool:
        """Check if the access token has expired."""
        return tokens.is_expired()

    @staticmethod
    def is_token_expiring_soon(
        tokens: TokenData, buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS
    ) -> bool:
        """Check if the access token expires within ``buffer_ms``."""
        return tokens.expires_within(buffer_ms)

    @staticmethod
    def is_valid_token_data(data: object) -> bool:
        """Check whether an object is a complete token record."""
        if isinstance(data, TokenData):
            return True
        if not isinstance(data, dict):
            return False
        try:
            TokenData.model_validate(data)
        except PydanticValidationError:
            return False
        return True

    # =========================================================================
    # File primitives
    # =========================================================================

    def _atomic_write(self, content: str) -> None:
        """Write content to a temporary file and rename it over the live file.

        ``mkstemp`` creates the temporary file with mode 0600 before any
        byte is written.
        """
        directory = self._token_path.parent
        directory.mkdir(parents=True, exist_ok=True)

        with self._write_lock:
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self._token_path.name}.", suffix=".tmp"
            )
            try:
                os.fchmod(fd, 0o600)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._token_path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise

            _fsync_directory(directory)


def secure_delete(path: Path) -> bool:
    """Overwrite a file with zeros, then unlink it.

    Returns:
        True if the file existed and was removed.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return False

    with open(path, "r+b") as handle:
        handle.write(bytes(size))
        handle.flush()
        os.fsync(handle.fileno())
    path.unlink()
    return True


def _fsync_directory(directory: Path) -> None:
    """Persist a rename by syncing its directory (POSIX only)."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


__all__ = [
    "DEFAULT_EXPIRY_BUFFER_MS",
    "TokenManager",
    "secure_delete",
]
