"""Custom exception hierarchy for the Google Drive MCP token vault.

This module defines a structured exception hierarchy for the error classes
the credential store distinguishes: cryptographic failures, transient and
permanent authorization failures, migration/rotation failures and
configuration errors.
"""

from __future__ import annotations


class GDriveMCPError(Exception):
    """Base exception for all Google Drive MCP errors.

    All custom exceptions inherit from this base class, enabling consistent
    error handling and catch-all exception handling patterns.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary containing additional error context.
    """

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary containing additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(GDriveMCPError):
    """Exception raised for missing or malformed configuration.

    Raised at startup when key material or settings are unusable. The
    process must not begin serving after this error.

    Examples:
        - GDRIVE_TOKEN_ENCRYPTION_KEY is not set
        - A configured key does not decode to 32 bytes
        - The current key version names no configured key
    """

    pass


class ValidationError(GDriveMCPError):
    """Exception raised for input validation errors.

    Attributes:
        field: The name of the field that failed validation, if applicable.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the validation error exception.

        Args:
            message: Human-readable error description.
            field: The name of the field that failed validation.
            details: Optional dictionary containing additional error context.
        """
        super().__init__(message, details)
        self.field = field


class CryptoError(GDriveMCPError):
    """Exception raised for cryptographic failures.

    Cryptographic errors always fail closed: no partial or best-guess
    plaintext is ever returned alongside them.
    """

    pass


class KeyVersionNotFoundError(CryptoError):
    """Exception raised when a key version is not registered.

    Attributes:
        version: The version label that could not be resolved.
    """

    def __init__(
        self,
        version: str,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(f"Key version {version} not found", details)
        self.version = version


class DecryptionError(CryptoError):
    """Exception raised when authenticated decryption fails.

    Examples:
        - Authentication tag mismatch (tampered ciphertext)
        - Wrong key for the ciphertext
        - Key derivation metadata does not match the registered version
    """

    pass


class MalformedEnvelopeError(CryptoError):
    """Exception raised when a stored envelope is structurally invalid."""

    pass


class AuthenticationError(GDriveMCPError):
    """Exception raised for OAuth and credential-related errors.

    Examples:
        - OAuth authorization code is invalid or expired
        - User denied OAuth consent
        - Invalid client credentials
    """

    pass


class TokenError(AuthenticationError):
    """Exception raised for token storage, encryption or refresh errors."""

    pass


class LegacyTokenFormatError(TokenError):
    """Exception raised when the token file uses the legacy flat format.

    Legacy files carry no algorithm or key-derivation metadata, so they are
    never decrypted ad hoc. Run the migration command instead.
    """

    def __init__(
        self,
        message: str = "Legacy token format detected - migration required",
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            details or {"hint": "Run 'python -m gdrive_mcp migrate-tokens'"},
        )


class InvalidGrantError(AuthenticationError):
    """Exception raised when the refresh grant is permanently unusable.

    The refresh token has been revoked or has expired. Retrying cannot
    succeed.
    """

    pass


class ReauthenticationRequiredError(AuthenticationError):
    """Exception raised when the user must run the consent flow again."""

    def __init__(
        self,
        message: str = "Authentication required - refresh token invalid",
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            details or {"hint": "Run 'python -m gdrive_mcp auth'"},
        )


class TransientRefreshError(AuthenticationError):
    """Exception raised for refresh failures that may succeed on retry.

    Examples:
        - Network timeout talking to the token endpoint
        - 5xx response from the token endpoint
    """

    pass


class RateLimitError(TransientRefreshError):
    """Exception raised when the token endpoint rate limits the client.

    Attributes:
        retry_after_seconds: Server-provided time to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        retry_after_seconds: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the rate limit exception.

        Args:
            message: Human-readable error description.
            retry_after_seconds: Suggested time to wait before retrying.
            details: Optional dictionary containing additional error context.
        """
        super().__init__(message, details)
        self.retry_after_seconds = retry_after_seconds


class MigrationError(GDriveMCPError):
    """Exception raised when migration or key rotation fails.

    Attributes:
        step: Name of the workflow step that failed.
    """

    def __init__(
        self,
        message: str,
        step: str,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.step = step


__all__ = [
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
