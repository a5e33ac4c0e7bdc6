"""Tests for the health check."""

from __future__ import annotations

import json
from pathlib import Path

from gdrive_mcp.auth.models import TokenData, now_ms
from gdrive_mcp.auth.token_manager import TokenManager
from gdrive_mcp.health import HealthStatus, check_health
from gdrive_mcp.utils.encryption import encrypt_data, pack_payload
from tests.conftest import SECRET_V1


class TestCheckHealth:
    """Tests for check_health."""

    def test_healthy(self, token_manager: TokenManager, sample_tokens: TokenData) -> None:
        token_manager.save_tokens(sample_tokens)

        result = check_health(token_manager)

        assert result.status == HealthStatus.HEALTHY
        assert result.status.exit_code == 0
        assert result.checks.token_status.status == "pass"
        assert result.checks.refresh_capability.status == "pass"

    def test_expiring_soon_is_degraded(self, token_manager: TokenManager) -> None:
        token_manager.save_tokens(
            TokenData(access_token="a", refresh_token="r", expiry_date=now_ms() + 60_000)
        )

        result = check_health(token_manager)

        assert result.status == HealthStatus.DEGRADED
        assert result.status.exit_code == 1
        assert result.checks.token_status.status == "warn"

    def test_expired_is_unhealthy(self, token_manager: TokenManager) -> None:
        token_manager.save_tokens(
            TokenData(access_token="a", refresh_token="r", expiry_date=now_ms() - 1)
        )
        result = check_health(token_manager)
        assert result.status == HealthStatus.UNHEALTHY
        assert result.status.exit_code == 2

    def test_missing_refresh_token_is_unhealthy(
        self, token_manager: TokenManager
    ) -> None:
        token_manager.save_tokens(
            TokenData(access_token="a", expiry_date=now_ms() + 3600 * 1000)
        )

        result = check_health(token_manager)

        assert result.status == HealthStatus.UNHEALTHY
        assert result.checks.refresh_capability.message == "No refresh token available"

    def test_no_tokens(self, token_manager: TokenManager) -> None:
        result = check_health(token_manager)
        assert result.status == HealthStatus.UNHEALTHY
        assert result.checks.token_status.message == "No tokens found"

    def test_legacy_format(self, token_manager: TokenManager, token_path: Path) -> None:
        token_path.write_text(pack_payload(encrypt_data(b"{}", SECRET_V1)))

        result = check_health(token_manager)

        assert result.status == HealthStatus.UNHEALTHY
        assert "migration required" in result.checks.token_status.message

    def test_binary_token_file_is_unhealthy(
        self, token_manager: TokenManager, token_path: Path
    ) -> None:
        token_path.write_bytes(b"\xff\xfe\x00garbage")

        result = check_health(token_manager)

        assert result.status == HealthStatus.UNHEALTHY
        assert result.status.exit_code == 2
        assert "not valid UTF-8" in result.checks.token_status.message

    def test_missing_oauth_file(
        self, token_manager: TokenManager, sample_tokens: TokenData, tmp_path: Path
    ) -> None:
        token_manager.save_tokens(sample_tokens)
        result = check_health(token_manager, oauth_path=tmp_path / "absent.json")
        assert result.status == HealthStatus.UNHEALTHY

    def test_json_shape(
        self, token_manager: TokenManager, sample_tokens: TokenData, oauth_keys_file: Path
    ) -> None:
        token_manager.save_tokens(sample_tokens)

        document = json.loads(check_health(token_manager, oauth_keys_file).to_json())

        assert document["status"] == "HEALTHY"
        assert set(document["checks"]) == {"tokenStatus", "refreshCapability"}
        assert "executionTimeMs" in document["metrics"]
        assert sample_tokens.access_token not in json.dumps(document)
