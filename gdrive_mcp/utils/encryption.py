"""AES-256-GCM encryption utilities for secure token storage.

This module provides cryptographic functions for encrypting and decrypting
sensitive data (primarily OAuth tokens) using AES-256-GCM authenticated
encryption. GCM mode provides both confidentiality and integrity protection.

Stored payloads use the textual form ``<iv hex>:<tag hex>:<ciphertext hex>``,
both inside versioned envelopes and in the legacy flat token files.

Security considerations:
- Keys must be 256 bits (32 bytes) for AES-256
- IVs are 96 bits (12 bytes) and must be unique per encryption
- Never reuse an IV with the same key
- Legacy files used 128-bit (16 byte) IVs; those are accepted for decryption only
"""

from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gdrive_mcp.utils.errors import (
    DecryptionError,
    MalformedEnvelopeError,
    ValidationError,
)

# Constants
KEY_SIZE_BITS = 256
KEY_SIZE_BYTES = KEY_SIZE_BITS // 8  # 32 bytes
IV_SIZE_BYTES = 12  # 96 bits, recommended for GCM
LEGACY_IV_SIZE_BYTES = 16
TAG_SIZE_BYTES = 16
ALGORITHM = "aes-256-gcm"

_PAYLOAD_RE = re.compile(r"^([0-9a-fA-F]+):([0-9a-fA-F]+):([0-9a-fA-F]*)$")


def generate_key() -> bytes:
    """Generate a cryptographically secure 256-bit encryption key.

    Returns:
        A 32-byte (256-bit) key suitable for AES-256-GCM encryption.
    """
    return AESGCM.generate_key(bit_length=KEY_SIZE_BITS)


def encrypt_data(plaintext: bytes, key: bytes | bytearray) -> dict[str, bytes]:
    """Encrypt data using AES-256-GCM authenticated encryption.

    Generates a fresh 12-byte IV for each call. The IV and authentication
    tag must be stored alongside the ciphertext for decryption.

    Args:
        plaintext: The data to encrypt.
        key: A 32-byte (256-bit) encryption key.

    Returns:
        A dictionary containing:
            - "iv": The 12-byte initialization vector (nonce)
            - "tag": The 16-byte authentication tag
            - "ciphertext": The encrypted data without the tag

    Raises:
        ValidationError: If the key is not exactly 32 bytes.

    Example:
        >>> key = generate_key()
        >>> encrypted = encrypt_data(b"secret token data", key)
        >>> sorted(encrypted)
        ['ciphertext', 'iv', 'tag']
    """
    _validate_key(key)

    iv = os.urandom(IV_SIZE_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return {
        "iv": iv,
        "tag": sealed[-TAG_SIZE_BYTES:],
        "ciphertext": sealed[:-TAG_SIZE_BYTES],
    }


def decrypt_data(
    iv: bytes, tag: bytes, ciphertext: bytes, key: bytes | bytearray
) -> bytes:
    """Decrypt data using AES-256-GCM authenticated decryption.

    Decrypts and verifies the authentication tag in a single operation.
    If the ciphertext, IV or tag has been tampered with, or the key is
    wrong, decryption fails and nothing is returned.

    Args:
        iv: The initialization vector used during encryption.
        tag: The 16-byte authentication tag.
        ciphertext: The encrypted data without the tag.
        key: The 32-byte (256-bit) encryption key used for encryption.

    Returns:
        The decrypted plaintext data.

    Raises:
        ValidationError: If the key, IV or tag has invalid length.
        DecryptionError: If authentication fails.
    """
    _validate_key(key)
    _validate_iv(iv)

    if len(tag) != TAG_SIZE_BYTES:
        raise ValidationError(
            f"Invalid tag length: expected {TAG_SIZE_BYTES} bytes, got {len(tag)}",
            field="tag",
            details={"expected_length": TAG_SIZE_BYTES, "actual_length": len(tag)},
        )

    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError(
            "Failed to decrypt data - invalid key or corrupted ciphertext",
            details={"error_type": type(e).__name__},
        ) from e


def pack_payload(encrypted: dict[str, bytes]) -> str:
    """Render an encryption result as ``iv:tag:ciphertext`` hex."""
    return ":".join(
        (
            encrypted["iv"].hex(),
            encrypted["tag"].hex(),
            encrypted["ciphertext"].hex(),
        )
    )


def unpack_payload(data: str) -> tuple[bytes, bytes, bytes]:
    """Split an ``iv:tag:ciphertext`` hex payload into its byte parts.

    Args:
        data: The hex payload string.

    Returns:
        Tuple of (iv, tag, ciphertext).

    Raises:
        MalformedEnvelopeError: If the payload does not have three hex parts.
    """
    match = _PAYLOAD_RE.match(data.strip())
    if match is None:
        raise MalformedEnvelopeError(
            "Invalid encrypted data format",
            details={"expected": "<iv hex>:<tag hex>:<ciphertext hex>"},
        )

    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in match.groups())
    except ValueError as e:
        raise MalformedEnvelopeError(
            "Invalid encrypted data format - invalid hex encoding",
            details={"error_message": str(e)},
        ) from e
    return iv, tag, ciphertext


def is_payload(data: str) -> bool:
    """Check whether a string has the flat ``iv:tag:ciphertext`` shape."""
    return _PAYLOAD_RE.match(data.strip()) is not None


def key_from_base64(encoded: str, field: str = "key") -> bytearray:
    """Decode a base64 string into a 32-byte key buffer.

    The result is a mutable ``bytearray`` so callers can zero it once the
    key has been consumed.

    Args:
        encoded: Base64 text, as produced by ``openssl rand -base64 32``.
        field: Name reported in validation errors.

    Returns:
        The 32 decoded key bytes.

    Raises:
        ValidationError: If the text is not base64 or does not decode to
            exactly 32 bytes.
    """
    try:
        raw = bytearray(base64.b64decode(encoded.strip(), validate=True))
    except (binascii.Error, ValueError) as e:
        raise ValidationError(
            "Invalid base64 encoding for key",
            field=field,
            details={"error_type": type(e).__name__},
        ) from e

    if len(raw) != KEY_SIZE_BYTES:
        length = len(raw)
        raw[:] = bytes(length)
        raise ValidationError(
            f"Invalid key length: {length} bytes. Must be a 32-byte base64-encoded key.",
            field=field,
            details={"expected_length": KEY_SIZE_BYTES, "actual_length": length},
        )
    return raw


def _validate_key(key: bytes | bytearray) -> None:
    """Validate that the key is the correct length for AES-256.

    Raises:
        ValidationError: If the key is not exactly 32 bytes.
    """
    if len(key) != KEY_SIZE_BYTES:
        raise ValidationError(
            f"Invalid key length: expected {KEY_SIZE_BYTES} bytes, got {len(key)}",
            field="key",
            details={"expected_length": KEY_SIZE_BYTES, "actual_length": len(key)},
        )


def _validate_iv(iv: bytes) -> None:
    """Validate that the IV has a length this store ever writes.

    Raises:
        ValidationError: If the IV is neither 12 nor 16 bytes.
    """
    if len(iv) not in (IV_SIZE_BYTES, LEGACY_IV_SIZE_BYTES):
        raise ValidationError(
            f"Invalid IV length: expected {IV_SIZE_BYTES} bytes, got {len(iv)}",
            field="iv",
            details={"expected_length": IV_SIZE_BYTES, "actual_length": len(iv)},
        )


__all__ = [
    "ALGORITHM",
    "IV_SIZE_BYTES",
    "KEY_SIZE_BYTES",
    "TAG_SIZE_BYTES",
    "generate_key",
    "encrypt_data",
    "decrypt_data",
    "pack_payload",
    "unpack_payload",
    "is_payload",
    "key_from_base64",
]
