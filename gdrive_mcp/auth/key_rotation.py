"""Versioned registry of derived token encryption keys.

The KeyRotationManager holds every key version the process knows about and
a pointer to the "current" version used for new encryptions. Several
versions coexist during a rotation: ciphertext is always decrypted with the
exact version recorded in its envelope.

Key versions are never written to disk. Their salt is either configured or
derived deterministically from the version label, so the same secret
yields the same key on every start.

Concurrency: single writer, many readers. Mutations (register, delete,
current-pointer change) take one lock and publish a new mapping; lookups
read whatever mapping is published without locking.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from gdrive_mcp.auth.key_derivation import (
    MIN_ITERATIONS,
    clear_sensitive_data,
    derive_key,
)
from gdrive_mcp.middleware.audit_logger import AuditEvent, AuditLogger
from gdrive_mcp.utils.encryption import ALGORITHM, KEY_SIZE_BYTES
from gdrive_mcp.utils.errors import KeyVersionNotFoundError, ValidationError

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"^v(\d+)$")
_SALT_CONTEXT = b"gdrive-mcp/token-encryption-key/"


@dataclass(frozen=True)
class KeySpec:
    """A labeled secret handed to the registry at construction.

    Attributes:
        version: Version label, e.g. ``"v1"``.
        secret: 32 bytes of input key material.
        salt: Optional KDF salt. Defaults to a per-version salt.
        iterations: Optional PBKDF2 iteration count. Defaults to the
            registry-wide count.
    """

    version: str
    secret: bytes | bytearray = field(repr=False)
    salt: bytes | None = None
    iterations: int | None = None


@dataclass
class KeyVersion:
    """A derived AES-256 key and the metadata needed to reproduce it."""

    version: str
    key: bytearray = field(repr=False)
    iterations: int
    salt: bytes
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    algorithm: str = ALGORITHM

    @property
    def key_id(self) -> str:
        """Identifier recorded in envelopes for this key."""
        return self.version


def default_salt(version: str) -> bytes:
    """Return the deterministic salt used when none is configured."""
    return hashlib.sha256(_SALT_CONTEXT + version.encode("utf-8")).digest()


def version_number(version: str) -> int:
    """Parse the numeric part of a ``v<N>`` label.

    Raises:
        ValidationError: If the label is not of the form ``v<N>``.
    """
    match = VERSION_PATTERN.match(version or "")
    if match is None:
        raise ValidationError(
            'Version must be in format "v1", "v2", etc.',
            field="version",
            details={"version": version},
        )
    return int(match.group(1))


def _check_iterations(iterations: int) -> None:
    if iterations < MIN_ITERATIONS:
        raise ValidationError(
            f"Iterations must be at least {MIN_ITERATIONS}",
            field="iterations",
            details={"minimum": MIN_ITERATIONS, "actual": iterations},
        )


class KeyRotationManager:
    """Registry of key versions plus the current-version pointer.

    Constructed once per process and passed to the services that need it.

    Example:
        >>> manager = KeyRotationManager([KeySpec("v1", secret)])
        >>> manager.get_current_key().version
        'v1'
    """

    def __init__(
        self,
        keys: Iterable[KeySpec] = (),
        current_version: str | None = None,
        iterations: int = MIN_ITERATIONS,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        """Register the given keys and set the current version.

        Args:
            keys: Key specs to register, in order.
            current_version: Version used for new encryptions. Defaults to
                the first registered key.
            iterations: Default PBKDF2 iteration count for registrations
                that do not name their own.
            audit_logger: Optional audit sink for key lifecycle events.

        Raises:
            ValidationError: If a spec is invalid or an iteration count is
                below the minimum.
            KeyVersionNotFoundError: If current_version was not registered.
        """
        _check_iterations(iterations)

        self._iterations = iterations
        self._audit = audit_logger
        self._lock = threading.Lock()
        self._keys: dict[str, KeyVersion] = {}
        self._current_version: str | None = None

        for spec in keys:
            self.register_key(
                spec.version, spec.secret, salt=spec.salt, iterations=spec.iterations
            )

        target = current_version or next(iter(self._keys), None)
        if target is not None:
            self.set_current_version(target)

        logger.debug(
            "KeyRotationManager initialized with versions: %s",
            ", ".join(self.list_versions()) or "(none)",
        )

    @property
    def iterations(self) -> int:
        """Default PBKDF2 iteration count for new registrations."""
        return self._iterations

    @property
    def current_version(self) -> str | None:
        """The version label used for new encryptions."""
        return self._current_version

    def register_key(
        self,
        version: str,
        secret: bytes | bytearray,
        salt: bytes | None = None,
        iterations: int | None = None,
    ) -> KeyVersion:
        """Derive and register a new key version.

        Args:
            version: Unused ``v<N>`` label.
            secret: 32 bytes of input key material. The caller keeps
                ownership of this buffer.
            salt: Optional KDF salt. Defaults to a per-version salt.
            iterations: Optional PBKDF2 iteration count for this version.
                Defaults to the registry-wide count.

        Returns:
            The registered KeyVersion.

        Raises:
            ValidationError: If the label is malformed, already registered,
                the secret is not 32 bytes, or the iteration count is below
                the minimum.
        """
        version_number(version)
        iterations = self._iterations if iterations is None else iterations
        _check_iterations(iterations)

        if len(secret) != KEY_SIZE_BYTES:
            raise ValidationError(
                f"Key must be {KEY_SIZE_BYTES} bytes for AES-256",
                field="secret",
                details={"version": version, "actual_length": len(secret)},
            )

        # Derivation is slow; do it outside the lock and discard on conflict.
        derived = derive_key(secret, salt or default_salt(version), iterations)
        key_version = KeyVersion(
            version=version,
            key=derived.key,
            iterations=derived.iterations,
            salt=derived.salt,
        )

        with self._lock:
            if version in self._keys:
                clear_sensitive_data(derived.key)
                raise ValidationError(
                    f"Key version {version} already registered",
                    field="version",
                    details={"version": version},
                )
            updated = dict(self._keys)
            updated[version] = key_version
            self._keys = updated

        logger.info("Registered new key version %s", version)
        self._log_event(
            AuditEvent.KEY_REGISTERED,
            {
                "keyVersion": version,
                "algorithm": ALGORITHM,
                "iterations": derived.iterations,
            },
        )
        return key_version

    def get_key(self, version: str) -> KeyVersion:
        """Resolve a specific key version.

        Raises:
            KeyVersionNotFoundError: If the version is not registered.
        """
        key_version = self._keys.get(version)
        if key_version is None:
            raise KeyVersionNotFoundError(
                version, details={"registered": self.list_versions()}
            )
        return key_version

    def get_current_key(self) -> KeyVersion:
        """Resolve the current key version.

        Raises:
            KeyVersionNotFoundError: If no current version is set.
        """
        if self._current_version is None:
            raise KeyVersionNotFoundError(
                "(current)", details={"hint": "No key versions registered"}
            )
        return self.get_key(self._current_version)

    def has_version(self, version: str) -> bool:
        """Check if a version is registered."""
        return version in self._keys

    def list_versions(self) -> list[str]:
        """Return registered version labels in numeric order."""
        return sorted(self._keys, key=version_number)

    def next_version(self) -> str:
        """Return the lowest unused label above every registered version."""
        highest = max((version_number(v) for v in self._keys), default=0)
        return f"v{highest + 1}"

    def get_key_metadata(self, version: str) -> dict[str, object]:
        """Return the non-secret metadata of a key version."""
        key_version = self.get_key(version)
        return {
            "version": key_version.version,
            "algorithm": key_version.algorithm,
            "createdAt": key_version.created_at.isoformat(),
            "iterations": key_version.iterations,
        }

    def set_current_version(self, version: str) -> None:
        """Point new encryptions at a registered version.

        Raises:
            KeyVersionNotFoundError: If the version is not registered.
        """
        with self._lock:
            if version not in self._keys:
                raise KeyVersionNotFoundError(version)
            previous = self._current_version
            self._current_version = version

        logger.info("Updated current key version to %s", version)
        self._log_event(
            AuditEvent.KEY_VERSION_CHANGED,
            {"previousVersion": previous, "newVersion": version},
        )

    def delete_key(self, version: str) -> None:
        """Remove a version and zero its key buffer.

        Raises:
            KeyVersionNotFoundError: If the version is not registered.
            ValidationError: If the version is the current version.
        """
        with self._lock:
            if version not in self._keys:
                raise KeyVersionNotFoundError(version)
            if version == self._current_version:
                raise ValidationError(
                    f"Cannot delete current key version {version}",
                    field="version",
                    details={"hint": "Set a different current version first"},
                )
            updated = dict(self._keys)
            removed = updated.pop(version)
            self._keys = updated
            clear_sensitive_data(removed.key)

        logger.info("Deleted key version %s", version)
        self._log_event(AuditEvent.KEY_DELETED, {"keyVersion": version})

    def clear_keys(self) -> None:
        """Zero and drop every registered key."""
        with self._lock:
            removed = self._keys
            self._keys = {}
            self._current_version = None
            for key_version in removed.values():
                clear_sensitive_data(key_version.key)

        logger.info("Cleared all keys from memory")

    def _log_event(self, event: AuditEvent, metadata: dict[str, object]) -> None:
        if self._audit is not None:
            self._audit.log_event(event, success=True, metadata=metadata)


__all__ = [
    "KeySpec",
    "KeyVersion",
    "KeyRotationManager",
    "VERSION_PATTERN",
    "default_salt",
    "version_number",
]
