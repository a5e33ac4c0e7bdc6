"""PBKDF2 key derivation and related primitives.

Pure functions apart from OS entropy consumption:

- derive_key: PBKDF2-HMAC-SHA256 with a fixed 32-byte output
- generate_salt: 32 bytes from the OS CSPRNG
- constant_time_compare: comparison whose timing does not depend on where
  the inputs first differ
- validate_key_strength: rejects short keys and keys with repeated patterns
"""

from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from gdrive_mcp.utils.errors import ValidationError

MIN_ITERATIONS = 100_000
KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 32
KDF_METHOD = "pbkdf2"

# A random 32-byte key has ~30 distinct byte values; anything this
# uniform is a placeholder, not key material.
_MIN_DISTINCT_BYTES = 8


@dataclass
class DerivedKey:
    """Result of a PBKDF2 derivation."""

    key: bytearray
    salt: bytes
    iterations: int


def derive_key(
    secret: bytes | bytearray | str,
    salt: bytes | None = None,
    iterations: int = MIN_ITERATIONS,
) -> DerivedKey:
    """Derive a 32-byte key from a secret using PBKDF2-HMAC-SHA256.

    Args:
        secret: Input key material. Strings are UTF-8 encoded.
        salt: Salt to derive with. A fresh random salt is generated when
            omitted.
        iterations: PBKDF2 iteration count, at least 100,000.

    Returns:
        DerivedKey holding the key in a zeroable buffer plus the salt and
        iteration count needed to reproduce it.

    Raises:
        ValidationError: If the iteration count is below the minimum.
    """
    if iterations < MIN_ITERATIONS:
        raise ValidationError(
            f"Iterations must be at least {MIN_ITERATIONS}",
            field="iterations",
            details={"minimum": MIN_ITERATIONS, "actual": iterations},
        )

    actual_salt = salt if salt is not None else generate_salt()
    material = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=actual_salt,
        iterations=iterations,
    )
    return DerivedKey(
        key=bytearray(kdf.derive(material)),
        salt=actual_salt,
        iterations=iterations,
    )


def generate_salt() -> bytes:
    """Generate a cryptographically secure 32-byte salt."""
    return os.urandom(SALT_LENGTH)


def constant_time_compare(a: bytes | str, b: bytes | str) -> bool:
    """Compare two values without leaking the first differing position.

    Used for version labels, KDF salts and other values read back from
    untrusted storage.
    """
    left = a.encode("utf-8") if isinstance(a, str) else bytes(a)
    right = b.encode("utf-8") if isinstance(b, str) else bytes(b)
    return hmac.compare_digest(left, right)


def validate_key_strength(key: bytes | bytearray) -> bool:
    """Check that key material is long enough and not trivially patterned.

    Rejects keys shorter than 32 bytes, keys made of a short repeated
    period (``00 00 ..``, ``ab ab ..``, ``01 02 03 01 02 03 ..``) and keys
    with very few distinct byte values.

    Returns:
        True if the key is acceptable, False otherwise.
    """
    if len(key) < KEY_LENGTH:
        return False

    data = bytes(key)
    if len(set(data)) < _MIN_DISTINCT_BYTES:
        return False

    for period in range(1, len(data) // 2 + 1):
        if all(data[i] == data[i % period] for i in range(period, len(data))):
            return False

    return True


def clear_sensitive_data(*buffers: bytearray | None) -> None:
    """Overwrite mutable key buffers with zeros."""
    for buffer in buffers:
        if isinstance(buffer, bytearray):
            buffer[:] = bytes(len(buffer))


__all__ = [
    "DerivedKey",
    "KDF_METHOD",
    "KEY_LENGTH",
    "MIN_ITERATIONS",
    "SALT_LENGTH",
    "clear_sensitive_data",
    "constant_time_compare",
    "derive_key",
    "generate_salt",
    "validate_key_strength",
]
