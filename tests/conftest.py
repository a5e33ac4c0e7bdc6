"""Pytest configuration and fixtures for Google Drive MCP tests."""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gdrive_mcp.auth.key_rotation import KeyRotationManager, KeySpec
from gdrive_mcp.auth.models import TokenData, now_ms
from gdrive_mcp.auth.token_manager import TokenManager
from gdrive_mcp.middleware.audit_logger import AuditLogger

# Fixed, non-patterned test secrets
SECRET_V1 = bytes(range(32))
SECRET_V2 = bytes(range(100, 132))
SECRET_V3 = bytes(range(200, 232))


def b64(secret: bytes) -> str:
    """Encode a secret the way the environment carries it."""
    return base64.b64encode(secret).decode("ascii")


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    """Fixture providing an audit logger writing under tmp_path."""
    return AuditLogger(tmp_path / "audit.log", user_id="test-user")


@pytest.fixture
def key_manager(audit: AuditLogger) -> KeyRotationManager:
    """Fixture providing a registry with v1 registered and current."""
    return KeyRotationManager([KeySpec("v1", SECRET_V1)], audit_logger=audit)


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    return tmp_path / "tokens.json"


@pytest.fixture
def token_manager(
    key_manager: KeyRotationManager, token_path: Path, audit: AuditLogger
) -> TokenManager:
    """Fixture providing a token store backed by tmp_path."""
    return TokenManager(key_manager, token_path, audit)


@pytest.fixture
def sample_tokens() -> TokenData:
    """Fixture providing valid tokens expiring in one hour."""
    return TokenData(
        access_token="ya29.mock-access-token",
        refresh_token="1//mock-refresh-token",
        expiry_date=now_ms() + 3600 * 1000,
        token_type="Bearer",
        scope="https://www.googleapis.com/auth/drive",
    )


@pytest.fixture
def oauth_keys_file(tmp_path: Path) -> Path:
    """Fixture providing an OAuth client file in the 'installed' layout."""
    path = tmp_path / "gcp-oauth.keys.json"
    path.write_text(
        json.dumps(
            {
                "installed": {
                    "client_id": "test-client-id.apps.googleusercontent.com",
                    "client_secret": "test-client-secret",
                    "redirect_uris": ["http://localhost:3000/oauth/callback"],
                }
            }
        )
    )
    return path


@pytest.fixture
def env(tmp_path: Path, oauth_keys_file: Path) -> dict[str, str]:
    """Fixture providing a complete environment rooted in tmp_path."""
    return {
        "GDRIVE_TOKEN_ENCRYPTION_KEY": b64(SECRET_V1),
        "GDRIVE_TOKEN_STORAGE_PATH": str(tmp_path / "tokens.json"),
        "GDRIVE_TOKEN_AUDIT_LOG_PATH": str(tmp_path / "audit.log"),
        "GDRIVE_TOKEN_BACKUP_DIR": str(tmp_path / "backups"),
        "GDRIVE_OAUTH_PATH": str(oauth_keys_file),
    }


def legacy_payload(tokens: dict, secret: bytes = SECRET_V1) -> str:
    """Encrypt tokens the way legacy files were written: raw key, 16-byte IV."""
    iv = os.urandom(16)
    sealed = AESGCM(secret).encrypt(iv, json.dumps(tokens).encode(), None)
    return f"{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"
