"""Construction of the per-process service objects.

Every command builds its services here from a Settings instance and passes
them by reference; there are no module-level singletons.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from gdrive_mcp.auth.auth_manager import AuthManager
from gdrive_mcp.auth.key_rotation import KeyRotationManager
from gdrive_mcp.auth.oauth import OAuthClient
from gdrive_mcp.auth.token_manager import TokenManager
from gdrive_mcp.config import Settings
from gdrive_mcp.middleware.audit_logger import AuditLogger
from gdrive_mcp.migration.orchestrator import MigrationOrchestrator
from gdrive_mcp.utils.errors import ConfigurationError, GDriveMCPError

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Storage-side services shared by every command."""

    settings: Settings
    audit: AuditLogger
    keys: KeyRotationManager
    tokens: TokenManager

    def orchestrator(self) -> MigrationOrchestrator:
        return MigrationOrchestrator(
            self.tokens, self.keys, self.audit, self.settings.backup_dir
        )

    def oauth_client(self) -> OAuthClient:
        """Load the OAuth client file named in the settings."""
        return OAuthClient.from_keys_file(self.settings.oauth_path)

    def auth_manager(
        self,
        oauth_client: OAuthClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> AuthManager:
        settings = self.settings
        return AuthManager(
            self.tokens,
            oauth_client or self.oauth_client(),
            self.audit,
            refresh_interval_seconds=settings.refresh_interval_ms / 1000,
            expiry_buffer_seconds=settings.preemptive_refresh_ms / 1000,
            max_retries=settings.max_retries,
            retry_base_delay_seconds=settings.retry_delay_ms / 1000,
            sleep=sleep,
        )


def build_services(settings: Settings) -> Services:
    """Construct the audit log, key registry and token store.

    The caller may zero the raw secrets with ``settings.clear_secrets()``
    afterwards; the registry keeps only derived keys.

    Raises:
        ConfigurationError: If the configured keys cannot be registered or
            were already released.
    """
    if settings.secrets_released:
        raise ConfigurationError(
            "Key material was already released",
            details={"hint": "Load settings again before building services"},
        )
    audit = AuditLogger(settings.audit_log_path, user_id=settings.user_id)
    try:
        keys = KeyRotationManager(
            settings.keys,
            current_version=settings.current_key_version,
            iterations=settings.kdf_iterations,
            audit_logger=audit,
        )
    except GDriveMCPError as e:
        raise ConfigurationError(
            f"Unusable key configuration: {e.message}", details=e.details
        ) from e

    tokens = TokenManager(keys, settings.token_storage_path, audit)
    logger.info(
        "Services ready (key versions: %s, current: %s)",
        ", ".join(keys.list_versions()),
        keys.current_version,
    )
    return Services(settings=settings, audit=audit, keys=keys, tokens=tokens)


__all__ = [
    "Services",
    "build_services",
]
