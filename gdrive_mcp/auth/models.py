"""Pydantic models for stored OAuth tokens and the on-disk envelope.

The envelope schema is strict: unknown fields, a different algorithm or a
different KDF method are rejected rather than guessed at, so a file that
merely parses as JSON is never mistaken for a versioned token store.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from gdrive_mcp.utils.encryption import ALGORITHM


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class TokenData(BaseModel):
    """OAuth credentials persisted by the token store.

    Attributes:
        access_token: Short-lived bearer token.
        refresh_token: Long-lived refresh credential. Absent after
            revocation or when a provider omits it.
        expiry_date: Access token expiry as epoch milliseconds.
        token_type: Token type, normally ``Bearer``.
        scope: Space-separated granted scopes.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expiry_date: int
    token_type: str = "Bearer"
    scope: str = ""

    def is_expired(self, at_ms: int | None = None) -> bool:
        """Check whether the access token has expired."""
        return (at_ms if at_ms is not None else now_ms()) >= self.expiry_date

    def expires_within(self, buffer_ms: int, at_ms: int | None = None) -> bool:
        """Check whether the access token expires within ``buffer_ms``."""
        return (at_ms if at_ms is not None else now_ms()) >= self.expiry_date - buffer_ms

    def seconds_until_expiry(self, at_ms: int | None = None) -> int:
        """Whole seconds until expiry (negative once expired)."""
        return (self.expiry_date - (at_ms if at_ms is not None else now_ms())) // 1000


class KeyDerivationInfo(BaseModel):
    """KDF parameters recorded alongside the ciphertext."""

    model_config = ConfigDict(extra="forbid")

    method: Literal["pbkdf2"] = "pbkdf2"
    iterations: int = Field(..., ge=1)
    salt: str = Field(..., min_length=1, description="Base64-encoded salt")


class VersionedTokenStorage(BaseModel):
    """Versioned on-disk envelope wrapping encrypted token data.

    Serialized with camelCase keys:
    ``{"version", "algorithm", "keyDerivation", "data", "createdAt", "keyId"}``.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    version: str = Field(..., pattern=r"^v\d+$")
    algorithm: Literal["aes-256-gcm"] = ALGORITHM
    key_derivation: KeyDerivationInfo = Field(..., alias="keyDerivation")
    data: str = Field(..., min_length=1, description="<iv hex>:<tag hex>:<ciphertext hex>")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="createdAt"
    )
    key_id: str = Field(..., alias="keyId")

    def to_json(self) -> str:
        """Serialize the envelope in its on-disk form."""
        return self.model_dump_json(by_alias=True, indent=2)


__all__ = [
    "KeyDerivationInfo",
    "TokenData",
    "VersionedTokenStorage",
    "now_ms",
]
