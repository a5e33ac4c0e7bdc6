"""Credential protection and refresh for the Google Drive MCP server.

This module provides:

- PBKDF2 key derivation and a versioned key registry for rotation
- An encrypted, versioned token store with atomic writes (AES-256-GCM)
- OAuth consent, refresh and revocation against Google's endpoints
- A refresh state machine with single-flight refresh and proactive monitoring

Usage:
    >>> from gdrive_mcp.auth import KeyRotationManager, KeySpec, TokenManager
    >>>
    >>> keys = KeyRotationManager([KeySpec("v1", secret)], audit_logger=audit)
    >>> store = TokenManager(keys, Path("~/.gdrive-mcp-tokens.json"), audit)
    >>> store.save_tokens(tokens)
"""

from gdrive_mcp.auth.auth_manager import AuthManager, AuthState, RefreshResult
from gdrive_mcp.auth.key_derivation import (
    MIN_ITERATIONS,
    DerivedKey,
    constant_time_compare,
    derive_key,
    generate_salt,
    validate_key_strength,
)
from gdrive_mcp.auth.key_rotation import KeyRotationManager, KeySpec, KeyVersion
from gdrive_mcp.auth.models import KeyDerivationInfo, TokenData, VersionedTokenStorage
from gdrive_mcp.auth.oauth import (
    GOOGLE_AUTH_URI,
    GOOGLE_REVOKE_URI,
    GOOGLE_TOKEN_URI,
    WORKSPACE_SCOPES,
    OAuthClient,
)
from gdrive_mcp.auth.token_manager import TokenManager

__all__ = [
    # Key derivation
    "MIN_ITERATIONS",
    "DerivedKey",
    "derive_key",
    "generate_salt",
    "constant_time_compare",
    "validate_key_strength",
    # Key registry
    "KeySpec",
    "KeyVersion",
    "KeyRotationManager",
    # Token storage
    "TokenData",
    "KeyDerivationInfo",
    "VersionedTokenStorage",
    "TokenManager",
    # OAuth
    "OAuthClient",
    "WORKSPACE_SCOPES",
    "GOOGLE_AUTH_URI",
    "GOOGLE_TOKEN_URI",
    "GOOGLE_REVOKE_URI",
    # State machine
    "AuthManager",
    "AuthState",
    "RefreshResult",
]
