"""Process configuration read from the environment.

This is the only place that reads ``GDRIVE_*`` variables. The numbered key
variables (``GDRIVE_TOKEN_ENCRYPTION_KEY_V2`` .. ``_V10``) are turned into an
explicit list of KeySpec entries here; the services receive that list and
never consult the environment themselves.

``GDRIVE_TOKEN_KDF_ITERATIONS`` sets the default PBKDF2 count;
``GDRIVE_TOKEN_KDF_ITERATIONS_V<N>`` pins one version. When raising the
default on an existing store, pin the versions already in use to the count
they were written with, then rotate to a new version.

Generate a key with::

    python -m gdrive_mcp generate-key
    # or: openssl rand -base64 32
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from gdrive_mcp.auth.key_derivation import (
    MIN_ITERATIONS,
    clear_sensitive_data,
    validate_key_strength,
)
from gdrive_mcp.auth.key_rotation import VERSION_PATTERN, KeySpec
from gdrive_mcp.utils.encryption import key_from_base64
from gdrive_mcp.utils.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

PRIMARY_KEY_VAR = "GDRIVE_TOKEN_ENCRYPTION_KEY"
SALT_VAR = "GDRIVE_TOKEN_KEY_SALT"
ITERATIONS_VAR = "GDRIVE_TOKEN_KDF_ITERATIONS"
MAX_KEY_VERSION = 10
TRANSPORTS = ("stdio", "streamable-http")


@dataclass(frozen=True)
class Settings:
    """Validated configuration for one process."""

    keys: tuple[KeySpec, ...] = field(repr=False)
    current_key_version: str = "v1"
    kdf_iterations: int = MIN_ITERATIONS
    refresh_interval_ms: int = 30 * 60 * 1000
    preemptive_refresh_ms: int = 10 * 60 * 1000
    max_retries: int = 3
    retry_delay_ms: int = 1000
    token_storage_path: Path = Path.home() / ".gdrive-mcp-tokens.json"
    audit_log_path: Path = Path.home() / ".gdrive-mcp-audit.log"
    backup_dir: Path = Path.home() / ".gdrive-mcp-backups"
    oauth_path: Path = Path("gcp-oauth.keys.json")
    user_id: str = "default"
    log_level: str = "INFO"
    transport: str = "stdio"

    @property
    def secrets_released(self) -> bool:
        """True once clear_secrets() has zeroed the raw key material."""
        return not any(any(spec.secret) for spec in self.keys)

    @property
    def primary_secret(self) -> bytearray:
        """Raw primary secret; legacy token files were encrypted with it.

        Raises:
            ConfigurationError: If it is not configured or was released.
        """
        if self.secrets_released:
            raise ConfigurationError("Key material was already released")
        for spec in self.keys:
            if spec.version == "v1":
                return bytearray(spec.secret)
        raise ConfigurationError(f"{PRIMARY_KEY_VAR} is not configured")

    def clear_secrets(self) -> None:
        """Zero every raw secret once the derived keys are registered."""
        for spec in self.keys:
            clear_sensitive_data(spec.secret)


def key_var_name(version: str) -> str:
    """Environment variable holding the secret for a version label."""
    return PRIMARY_KEY_VAR if version == "v1" else f"{PRIMARY_KEY_VAR}_{version.upper()}"


def read_key_secret(environ: Mapping[str, str], version: str) -> bytearray | None:
    """Decode and check the configured secret for one version.

    Returns:
        The 32-byte secret, or None if the variable is unset.

    Raises:
        ConfigurationError: If the value is not a strong 32-byte base64 key.
    """
    name = key_var_name(version)
    encoded = environ.get(name)
    if not encoded:
        return None

    try:
        secret = key_from_base64(encoded, field=name)
    except ValidationError as e:
        raise ConfigurationError(
            f"{name} must be a base64-encoded 32-byte key",
            details={"variable": name, "error": e.message},
        ) from e

    if not validate_key_strength(secret):
        raise ConfigurationError(
            f"{name} is too weak (repeated pattern or low variety)",
            details={"variable": name, "hint": "Generate one with 'generate-key'"},
        )
    return secret


def _read_salt(environ: Mapping[str, str], version: str) -> bytes | None:
    name = SALT_VAR if version == "v1" else f"{SALT_VAR}_{version.upper()}"
    encoded = environ.get(name)
    if not encoded:
        return None
    try:
        return bytes(key_from_base64(encoded, field=name))
    except ValidationError as e:
        raise ConfigurationError(
            f"{name} must be a base64-encoded 32-byte salt",
            details={"variable": name, "error": e.message},
        ) from e


def _read_int(
    environ: Mapping[str, str], name: str, default: int, minimum: int
) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer", details={"variable": name, "value": raw}
        ) from e
    if value < minimum:
        raise ConfigurationError(
            f"{name} must be at least {minimum}",
            details={"variable": name, "value": value},
        )
    return value


def _read_path(environ: Mapping[str, str], name: str, default: Path) -> Path:
    raw = environ.get(name)
    return Path(raw).expanduser() if raw else default


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Parse and validate configuration.

    Args:
        environ: Variables to read. Defaults to ``os.environ``.

    Raises:
        ConfigurationError: If key material is missing, malformed or weak,
            the current version names no configured key, or a numeric
            setting is invalid.
    """
    env = os.environ if environ is None else environ
    kdf_iterations = _read_int(env, ITERATIONS_VAR, MIN_ITERATIONS, MIN_ITERATIONS)

    keys: list[KeySpec] = []
    for number in range(1, MAX_KEY_VERSION + 1):
        version = f"v{number}"
        secret = read_key_secret(env, version)
        if secret is None:
            continue
        # A version keeps the count its envelopes were written with.
        iterations = _read_int(
            env, f"{ITERATIONS_VAR}_{version.upper()}", kdf_iterations, MIN_ITERATIONS
        )
        keys.append(KeySpec(version, secret, _read_salt(env, version), iterations))

    if not keys or keys[0].version != "v1":
        raise ConfigurationError(
            f"{PRIMARY_KEY_VAR} environment variable is required",
            details={"hint": "Generate one with 'python -m gdrive_mcp generate-key'"},
        )

    current = env.get("GDRIVE_TOKEN_CURRENT_KEY_VERSION", "v1").strip()
    if not VERSION_PATTERN.match(current):
        raise ConfigurationError(
            'GDRIVE_TOKEN_CURRENT_KEY_VERSION must be in format "v1", "v2", etc.',
            details={"value": current},
        )
    if current not in {spec.version for spec in keys}:
        raise ConfigurationError(
            f"Current key version {current} has no configured key",
            details={"hint": f"Set {key_var_name(current)}"},
        )

    transport = env.get("TRANSPORT", "stdio").strip().lower()
    if transport not in TRANSPORTS:
        raise ConfigurationError(
            f"TRANSPORT must be one of: {', '.join(TRANSPORTS)}",
            details={"value": transport},
        )

    home = Path.home()
    settings = Settings(
        keys=tuple(keys),
        current_key_version=current,
        kdf_iterations=kdf_iterations,
        refresh_interval_ms=_read_int(env, "GDRIVE_TOKEN_REFRESH_INTERVAL", 1_800_000, 1),
        preemptive_refresh_ms=_read_int(env, "GDRIVE_TOKEN_PREEMPTIVE_REFRESH", 600_000, 0),
        max_retries=_read_int(env, "GDRIVE_TOKEN_MAX_RETRIES", 3, 1),
        retry_delay_ms=_read_int(env, "GDRIVE_TOKEN_RETRY_DELAY", 1000, 0),
        token_storage_path=_read_path(
            env, "GDRIVE_TOKEN_STORAGE_PATH", home / ".gdrive-mcp-tokens.json"
        ),
        audit_log_path=_read_path(
            env, "GDRIVE_TOKEN_AUDIT_LOG_PATH", home / ".gdrive-mcp-audit.log"
        ),
        backup_dir=_read_path(env, "GDRIVE_TOKEN_BACKUP_DIR", home / ".gdrive-mcp-backups"),
        oauth_path=_read_path(env, "GDRIVE_OAUTH_PATH", Path("gcp-oauth.keys.json")),
        user_id=env.get("GDRIVE_USER_ID", "default") or "default",
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        transport=transport,
    )
    logger.debug(
        "Loaded settings: key versions %s, current %s",
        ", ".join(spec.version for spec in keys),
        current,
    )
    return settings


__all__ = [
    "Settings",
    "key_var_name",
    "load_settings",
    "read_key_secret",
]
