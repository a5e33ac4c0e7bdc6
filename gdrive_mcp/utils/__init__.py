"""Utility functions and helpers for the Google Drive MCP token vault.

This module provides common utilities including custom exceptions and
AES-256-GCM encryption helpers.
"""

from gdrive_mcp.utils.encryption import (
    decrypt_data,
    encrypt_data,
    generate_key,
    key_from_base64,
    pack_payload,
    unpack_payload,
)
from gdrive_mcp.utils.errors import (
    AuthenticationError,
    ConfigurationError,
    CryptoError,
    DecryptionError,
    GDriveMCPError,
    InvalidGrantError,
    KeyVersionNotFoundError,
    LegacyTokenFormatError,
    MalformedEnvelopeError,
    MigrationError,
    RateLimitError,
    ReauthenticationRequiredError,
    TokenError,
    TransientRefreshError,
    ValidationError,
)

__all__ = [
    # Encryption utilities
    "generate_key",
    "encrypt_data",
    "decrypt_data",
    "pack_payload",
    "unpack_payload",
    "key_from_base64",
    # Exception hierarchy
    "GDriveMCPError",
    "ConfigurationError",
    "ValidationError",
    "CryptoError",
    "KeyVersionNotFoundError",
    "DecryptionError",
    "MalformedEnvelopeError",
    "AuthenticationError",
    "TokenError",
    "LegacyTokenFormatError",
    "InvalidGrantError",
    "ReauthenticationRequiredError",
    "TransientRefreshError",
    "RateLimitError",
    "MigrationError",
]
