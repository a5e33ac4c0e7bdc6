"""Tests for the command-line entry point."""

from __future__ import annotations

import base64
import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from gdrive_mcp.__main__ import main
from gdrive_mcp.auth.models import TokenData
from gdrive_mcp.config import load_settings
from gdrive_mcp.services import build_services
from tests.conftest import SECRET_V2, b64, legacy_payload


@pytest.fixture(autouse=True)
def no_dotenv() -> Iterator[None]:
    """Keep a developer's .env and logging setup out of CLI tests."""
    with (
        patch("gdrive_mcp.__main__.load_dotenv"),
        patch("gdrive_mcp.__main__.configure_logging"),
    ):
        yield


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _store(env: dict[str, str], tokens: TokenData) -> None:
    build_services(load_settings(env)).tokens.save_tokens(tokens)


class TestGenerateKey:
    """Tests for generate-key."""

    def test_prints_32_byte_key(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["generate-key"])

        assert result.exit_code == 0
        assert len(base64.b64decode(result.stdout.strip())) == 32


class TestServe:
    """Tests for serve and the default command."""

    @pytest.mark.parametrize("args", [[], ["serve"]])
    def test_runs_stdio_by_default(
        self, runner: CliRunner, env: dict[str, str], args: list[str]
    ) -> None:
        server = MagicMock()
        with patch("gdrive_mcp.server.create_server", return_value=server):
            result = runner.invoke(main, args, env=env)

        assert result.exit_code == 0
        server.run.assert_called_once_with(transport="stdio")

    def test_streamable_http(self, runner: CliRunner, env: dict[str, str]) -> None:
        env["TRANSPORT"] = "streamable-http"
        server = MagicMock()
        with patch("gdrive_mcp.server.create_server", return_value=server):
            runner.invoke(main, ["serve"], env=env)
        server.run.assert_called_once_with(transport="streamable-http")

    def test_missing_key_fails(self, runner: CliRunner, env: dict[str, str]) -> None:
        env["GDRIVE_TOKEN_ENCRYPTION_KEY"] = ""
        result = runner.invoke(main, ["serve"], env=env)

        assert result.exit_code == 1
        assert "GDRIVE_TOKEN_ENCRYPTION_KEY" in result.output


class TestAuth:
    """Tests for the consent command."""

    def test_stores_tokens(
        self, runner: CliRunner, env: dict[str, str], sample_tokens: TokenData
    ) -> None:
        with patch(
            "gdrive_mcp.auth.oauth.OAuthClient.run_local_server",
            return_value=sample_tokens,
        ):
            result = runner.invoke(main, ["auth"], env=env)

        assert result.exit_code == 0
        assert "Authentication successful" in result.output
        stored = build_services(load_settings(env)).tokens.load_tokens()
        assert stored == sample_tokens

    def test_missing_oauth_file(
        self, runner: CliRunner, env: dict[str, str], tmp_path: Path
    ) -> None:
        env["GDRIVE_OAUTH_PATH"] = str(tmp_path / "absent.json")
        result = runner.invoke(main, ["auth"], env=env)

        assert result.exit_code == 1
        assert "OAuth configuration not found" in result.output


class TestMigrateTokens:
    """Tests for migrate-tokens."""

    def test_full_migration_flow(
        self, runner: CliRunner, env: dict[str, str], tmp_path: Path
    ) -> None:
        """Migrate, verify, then clean up the legacy backup."""
        Path(env["GDRIVE_TOKEN_STORAGE_PATH"]).write_text(
            legacy_payload(
                {"access_token": "a", "refresh_token": "r", "expiry_date": 1893456000000}
            )
        )

        migrated = runner.invoke(main, ["migrate-tokens"], env=env)
        assert migrated.exit_code == 0
        assert "Tokens migrated to versioned format" in migrated.output

        verified = runner.invoke(main, ["verify-keys"], env=env)
        assert verified.exit_code == 0
        assert "decrypted with key version v1" in verified.output

        cleaned = runner.invoke(main, ["migrate-tokens", "--cleanup"], env=env)
        assert cleaned.exit_code == 0
        assert "Removed 1 legacy backup(s)" in cleaned.output
        assert list((tmp_path / "backups").glob("tokens-*.json")) == []

    def test_nothing_to_migrate(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(main, ["migrate-tokens"], env=env)
        assert result.exit_code == 0
        assert "No tokens found" in result.output

    def test_reports_failed_step(self, runner: CliRunner, env: dict[str, str]) -> None:
        Path(env["GDRIVE_TOKEN_STORAGE_PATH"]).write_text(
            legacy_payload({"access_token": "a"}, secret=SECRET_V2)
        )

        result = runner.invoke(main, ["migrate-tokens"], env=env)

        assert result.exit_code == 1
        assert "step 'decrypt_legacy'" in result.output


class TestRotateKey:
    """Tests for rotate-key."""

    def test_rotates_with_configured_key(
        self, runner: CliRunner, env: dict[str, str], sample_tokens: TokenData
    ) -> None:
        _store(env, sample_tokens)
        env["GDRIVE_TOKEN_ENCRYPTION_KEY_V2"] = b64(SECRET_V2)

        result = runner.invoke(main, ["rotate-key"], env=env)

        assert result.exit_code == 0
        assert "GDRIVE_TOKEN_CURRENT_KEY_VERSION=v2" in result.output

        env["GDRIVE_TOKEN_CURRENT_KEY_VERSION"] = "v2"
        services = build_services(load_settings(env))
        assert services.tokens.load_envelope().version == "v2"
        assert services.tokens.load_tokens() == sample_tokens

    def test_missing_key_fails(
        self, runner: CliRunner, env: dict[str, str], sample_tokens: TokenData
    ) -> None:
        _store(env, sample_tokens)

        result = runner.invoke(main, ["rotate-key", "v2"], env=env)

        assert result.exit_code == 1
        assert "step 'resolve'" in result.output
        assert "GDRIVE_TOKEN_ENCRYPTION_KEY_V2" in result.output


class TestVerifyKeys:
    """Tests for verify-keys."""

    def test_no_tokens(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(main, ["verify-keys"], env=env)
        assert result.exit_code == 1
        assert "No tokens found" in result.output


class TestHealth:
    """Tests for the health command."""

    def test_healthy(
        self, runner: CliRunner, env: dict[str, str], sample_tokens: TokenData
    ) -> None:
        _store(env, sample_tokens)

        result = runner.invoke(main, ["health"], env=env)

        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "HEALTHY"

    def test_no_tokens_is_unhealthy(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(main, ["health"], env=env)

        assert result.exit_code == 2
        assert json.loads(result.stdout)["status"] == "UNHEALTHY"

    def test_configuration_error(self, runner: CliRunner, env: dict[str, str]) -> None:
        env["GDRIVE_TOKEN_ENCRYPTION_KEY"] = ""

        result = runner.invoke(main, ["health"], env=env)

        assert result.exit_code == 2
        assert result.stdout == ""
        assert json.loads(result.stderr)["status"] == "UNHEALTHY"
