"""Tests for the refresh state machine and proactive monitor."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gdrive_mcp.auth.auth_manager import AuthManager, AuthState
from gdrive_mcp.auth.models import TokenData, now_ms
from gdrive_mcp.auth.oauth import OAuthClient
from gdrive_mcp.auth.token_manager import TokenManager
from gdrive_mcp.middleware.audit_logger import AuditEvent, AuditLogger
from gdrive_mcp.utils.encryption import encrypt_data, pack_payload
from gdrive_mcp.utils.errors import (
    InvalidGrantError,
    LegacyTokenFormatError,
    RateLimitError,
    ReauthenticationRequiredError,
    TokenError,
    TransientRefreshError,
)
from tests.conftest import SECRET_V1

REFRESH_INTERVAL = 1800


def _refreshed(access_token: str = "ya29.refreshed") -> dict:
    return {
        "access_token": access_token,
        "expiry_date": now_ms() + 3600 * 1000,
        "token_type": "Bearer",
    }


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def expiring_tokens() -> TokenData:
    """Tokens expiring inside the default ten-minute buffer."""
    return TokenData(
        access_token="ya29.expiring",
        refresh_token="1//stored-refresh",
        expiry_date=now_ms() + 60 * 1000,
    )


@pytest.fixture
def oauth() -> MagicMock:
    return MagicMock(spec=OAuthClient)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def manager(
    token_manager: TokenManager,
    oauth: MagicMock,
    audit: AuditLogger,
    sleep: RecordingSleep,
) -> AuthManager:
    return AuthManager(
        token_manager,
        oauth,
        audit,
        refresh_interval_seconds=REFRESH_INTERVAL,
        sleep=sleep,
    )


def _events(audit: AuditLogger, event: AuditEvent) -> list:
    return [entry for entry in audit.read_entries() if entry.event == event]


class TestInitialize:
    """Tests for loading persisted state."""

    @pytest.mark.asyncio
    async def test_no_tokens(self, manager: AuthManager) -> None:
        assert await manager.initialize() == AuthState.UNAUTHENTICATED
        assert not manager.is_monitoring

    @pytest.mark.asyncio
    async def test_loads_tokens_and_starts_monitoring(
        self,
        manager: AuthManager,
        token_manager: TokenManager,
        sample_tokens: TokenData,
    ) -> None:
        token_manager.save_tokens(sample_tokens)
        try:
            assert await manager.initialize() == AuthState.AUTHENTICATED
            assert manager.tokens == sample_tokens
            assert manager.is_monitoring
        finally:
            await manager.stop_monitoring()

    @pytest.mark.asyncio
    async def test_legacy_file_is_fatal(
        self, manager: AuthManager, token_path: Path
    ) -> None:
        token_path.write_text(pack_payload(encrypt_data(b"{}", SECRET_V1)))
        with pytest.raises(LegacyTokenFormatError):
            await manager.initialize()

    @pytest.mark.asyncio
    async def test_expired_tokens_report_expired(
        self, manager: AuthManager
    ) -> None:
        await manager.set_tokens(
            TokenData(access_token="a", refresh_token="r", expiry_date=now_ms() - 1000)
        )
        assert manager.state == AuthState.TOKEN_EXPIRED
        assert manager.status()["state"] == "token_expired"


class TestSingleFlightRefresh:
    """Tests for concurrent refresh coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
    ) -> None:
        """N concurrent refreshes make one network call and agree on the result."""
        calls = []

        def refresh(refresh_token: str) -> dict:
            calls.append(refresh_token)
            return _refreshed()

        oauth.refresh_access_token.side_effect = refresh
        await manager.set_tokens(expiring_tokens)

        results = await asyncio.gather(*(manager.refresh_token() for _ in range(10)))

        assert calls == ["1//stored-refresh"]
        assert len({id(result) for result in results}) == 1
        assert results[0].tokens.access_token == "ya29.refreshed"
        assert manager.state == AuthState.AUTHENTICATED
        assert not manager.is_refreshing

    @pytest.mark.asyncio
    async def test_sequential_refreshes_each_hit_network(
        self, manager: AuthManager, oauth: MagicMock, expiring_tokens: TokenData
    ) -> None:
        oauth.refresh_access_token.side_effect = [_refreshed("a1"), _refreshed("a2")]
        await manager.set_tokens(expiring_tokens)

        await manager.refresh_token()
        result = await manager.refresh_token()

        assert oauth.refresh_access_token.call_count == 2
        assert result.tokens.access_token == "a2"

    @pytest.mark.asyncio
    async def test_concurrent_invalid_grant_deletes_once(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
        token_path: Path,
        audit: AuditLogger,
    ) -> None:
        """Every waiter sees re-auth; the file is deleted with one audit entry."""
        oauth.refresh_access_token.side_effect = InvalidGrantError("revoked")
        await manager.set_tokens(expiring_tokens)

        results = await asyncio.gather(
            *(manager.refresh_token() for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(r, ReauthenticationRequiredError) for r in results)
        assert oauth.refresh_access_token.call_count == 1
        assert not token_path.exists()
        assert len(_events(audit, AuditEvent.TOKEN_DELETED_INVALID_GRANT)) == 1
        assert manager.state == AuthState.TOKENS_REVOKED
        assert manager.tokens is None


class TestRetryPolicy:
    """Tests for bounded retries and backoff."""

    @pytest.mark.asyncio
    async def test_exponential_backoff_then_success(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sleep: RecordingSleep,
        expiring_tokens: TokenData,
    ) -> None:
        oauth.refresh_access_token.side_effect = [
            TransientRefreshError("503"),
            TransientRefreshError("503"),
            _refreshed(),
        ]
        await manager.set_tokens(expiring_tokens)

        result = await manager.refresh_token()

        assert sleep.delays == [1.0, 2.0]
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sleep: RecordingSleep,
        expiring_tokens: TokenData,
    ) -> None:
        oauth.refresh_access_token.side_effect = [
            RateLimitError("429", retry_after_seconds=7),
            _refreshed(),
        ]
        await manager.set_tokens(expiring_tokens)

        await manager.refresh_token()

        assert sleep.delays == [7]

    @pytest.mark.asyncio
    async def test_rate_limit_without_retry_after(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sleep: RecordingSleep,
        expiring_tokens: TokenData,
    ) -> None:
        oauth.refresh_access_token.side_effect = [RateLimitError("429"), _refreshed()]
        await manager.set_tokens(expiring_tokens)

        await manager.refresh_token()

        assert sleep.delays == [60]

    @pytest.mark.asyncio
    async def test_exhaustion_sets_refresh_failed(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sleep: RecordingSleep,
        expiring_tokens: TokenData,
        token_path: Path,
        audit: AuditLogger,
    ) -> None:
        oauth.refresh_access_token.side_effect = TransientRefreshError("down")
        await manager.set_tokens(expiring_tokens)

        with pytest.raises(TransientRefreshError):
            await manager.refresh_token()

        assert oauth.refresh_access_token.call_count == 3
        assert sleep.delays == [1.0, 2.0]
        assert manager.state == AuthState.REFRESH_FAILED
        # Transient failures never delete stored tokens
        assert token_path.exists()
        failure = _events(audit, AuditEvent.TOKEN_REFRESH_FAILED)[-1]
        assert failure.metadata["reason"] == "retries_exhausted"

    @pytest.mark.asyncio
    async def test_invalid_grant_is_never_retried(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sleep: RecordingSleep,
        expiring_tokens: TokenData,
    ) -> None:
        oauth.refresh_access_token.side_effect = [
            TransientRefreshError("blip"),
            InvalidGrantError("revoked"),
        ]
        await manager.set_tokens(expiring_tokens)

        with pytest.raises(ReauthenticationRequiredError):
            await manager.refresh_token()

        assert oauth.refresh_access_token.call_count == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_no_refresh_token(
        self, manager: AuthManager, oauth: MagicMock, audit: AuditLogger
    ) -> None:
        await manager.set_tokens(TokenData(access_token="a", expiry_date=now_ms()))

        with pytest.raises(ReauthenticationRequiredError):
            await manager.refresh_token()

        oauth.refresh_access_token.assert_not_called()
        assert _events(audit, AuditEvent.TOKEN_REFRESH_FAILED)[-1].success is False


class TestTokenUpdate:
    """Tests for merging and persisting refreshed tokens."""

    @pytest.mark.asyncio
    async def test_merge_preserves_refresh_token(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
        token_manager: TokenManager,
    ) -> None:
        oauth.refresh_access_token.return_value = _refreshed()
        await manager.set_tokens(expiring_tokens)

        await manager.refresh_token()

        assert manager.tokens.refresh_token == "1//stored-refresh"
        stored = token_manager.load_tokens()
        assert stored.access_token == "ya29.refreshed"
        assert stored.refresh_token == "1//stored-refresh"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_replaces_stored(
        self, manager: AuthManager, expiring_tokens: TokenData
    ) -> None:
        await manager.set_tokens(expiring_tokens)
        update = {**_refreshed(), "refresh_token": "1//rotated"}

        tokens = await manager.handle_token_update(update)

        assert tokens.refresh_token == "1//rotated"

    @pytest.mark.asyncio
    async def test_persist_failure_leaves_memory_unchanged(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
        token_manager: TokenManager,
    ) -> None:
        oauth.refresh_access_token.return_value = _refreshed()
        await manager.set_tokens(expiring_tokens)

        with patch.object(
            token_manager, "save_tokens", side_effect=TokenError("disk full")
        ):
            with pytest.raises(TokenError):
                await manager.refresh_token()

        assert manager.tokens == expiring_tokens

    @pytest.mark.asyncio
    async def test_refresh_is_audited(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
        audit: AuditLogger,
    ) -> None:
        oauth.refresh_access_token.return_value = _refreshed()
        await manager.set_tokens(expiring_tokens)

        await manager.refresh_token()

        assert len(_events(audit, AuditEvent.TOKEN_ACQUIRED)) == 1
        assert len(_events(audit, AuditEvent.TOKEN_REFRESHED)) == 1


class TestAccessToken:
    """Tests for get_access_token."""

    @pytest.mark.asyncio
    async def test_fresh_token_needs_no_refresh(
        self, manager: AuthManager, oauth: MagicMock, sample_tokens: TokenData
    ) -> None:
        await manager.set_tokens(sample_tokens)
        assert await manager.get_access_token() == sample_tokens.access_token
        oauth.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(
        self, manager: AuthManager, oauth: MagicMock, expiring_tokens: TokenData
    ) -> None:
        oauth.refresh_access_token.return_value = _refreshed()
        await manager.set_tokens(expiring_tokens)
        assert await manager.get_access_token() == "ya29.refreshed"

    @pytest.mark.asyncio
    async def test_unauthenticated(self, manager: AuthManager) -> None:
        with pytest.raises(ReauthenticationRequiredError):
            await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_credentials_built_from_refreshed_tokens(
        self, manager: AuthManager, oauth: MagicMock, expiring_tokens: TokenData
    ) -> None:
        oauth.refresh_access_token.return_value = _refreshed()
        await manager.set_tokens(expiring_tokens)

        credentials = await manager.get_credentials()

        assert credentials is oauth.get_credentials.return_value
        (tokens,), _ = oauth.get_credentials.call_args
        assert tokens.access_token == "ya29.refreshed"
        assert tokens.refresh_token == "1//stored-refresh"


class TestRevoke:
    """Tests for user revocation."""

    @pytest.mark.asyncio
    async def test_revokes_and_deletes(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sample_tokens: TokenData,
        token_path: Path,
        audit: AuditLogger,
    ) -> None:
        oauth.revoke_token.return_value = True
        await manager.set_tokens(sample_tokens)

        assert await manager.revoke() is True

        oauth.revoke_token.assert_called_once_with(sample_tokens.refresh_token)
        assert not token_path.exists()
        assert manager.state == AuthState.TOKENS_REVOKED
        assert len(_events(audit, AuditEvent.TOKEN_REVOKED_BY_USER)) == 1

    @pytest.mark.asyncio
    async def test_deletes_locally_when_google_refuses(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        sample_tokens: TokenData,
        token_path: Path,
    ) -> None:
        oauth.revoke_token.return_value = False
        await manager.set_tokens(sample_tokens)

        await manager.revoke()

        assert not token_path.exists()


class TestMonitoring:
    """Tests for the proactive expiry monitor."""

    @pytest.mark.asyncio
    async def test_check_skips_fresh_tokens(
        self, manager: AuthManager, oauth: MagicMock, sample_tokens: TokenData
    ) -> None:
        await manager.set_tokens(sample_tokens)
        assert await manager.check_and_refresh() is None
        oauth.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_check_swallows_failures(
        self, manager: AuthManager, oauth: MagicMock, expiring_tokens: TokenData
    ) -> None:
        oauth.refresh_access_token.side_effect = TransientRefreshError("down")
        await manager.set_tokens(expiring_tokens)
        assert await manager.check_and_refresh() is None

    @pytest.mark.asyncio
    async def test_monitor_survives_unexpected_error(
        self,
        token_manager: TokenManager,
        oauth: MagicMock,
        audit: AuditLogger,
        expiring_tokens: TokenData,
    ) -> None:
        """An unclassified failure is logged and the next tick refreshes."""
        ticks: list[float] = []
        second_tick = asyncio.Event()

        async def tick(delay: float) -> None:
            ticks.append(delay)
            if len(ticks) >= 2:
                second_tick.set()
                await asyncio.Event().wait()

        oauth.refresh_access_token.side_effect = [ValueError("bad body"), _refreshed()]
        token_manager.save_tokens(expiring_tokens)
        manager = AuthManager(
            token_manager,
            oauth,
            audit,
            refresh_interval_seconds=REFRESH_INTERVAL,
            sleep=tick,
        )

        await manager.initialize()
        await asyncio.wait_for(second_tick.wait(), timeout=5)
        assert manager.is_monitoring
        await manager.stop_monitoring()

        assert oauth.refresh_access_token.call_count == 2
        assert manager.tokens.access_token == "ya29.refreshed"
        failures = _events(audit, AuditEvent.TOKEN_REFRESH_FAILED)
        assert failures[0].metadata["error_type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_monitor_refreshes_before_expiry(
        self,
        token_manager: TokenManager,
        oauth: MagicMock,
        audit: AuditLogger,
        expiring_tokens: TokenData,
    ) -> None:
        """The first tick refreshes a token inside the buffer, then waits."""
        ticked = asyncio.Event()

        async def tick(delay: float) -> None:
            ticked.set()
            await asyncio.Event().wait()

        oauth.refresh_access_token.return_value = _refreshed()
        token_manager.save_tokens(expiring_tokens)
        manager = AuthManager(
            token_manager,
            oauth,
            audit,
            refresh_interval_seconds=REFRESH_INTERVAL,
            sleep=tick,
        )

        await manager.initialize()
        await asyncio.wait_for(ticked.wait(), timeout=5)
        await manager.stop_monitoring()

        oauth.refresh_access_token.assert_called_once()
        assert manager.tokens.access_token == "ya29.refreshed"
        assert not manager.is_monitoring

    @pytest.mark.asyncio
    async def test_stop_does_not_cancel_in_flight_refresh(
        self,
        manager: AuthManager,
        oauth: MagicMock,
        expiring_tokens: TokenData,
        token_manager: TokenManager,
    ) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_refresh(refresh_token: str) -> dict:
            started.set()
            release.wait(timeout=5)
            return _refreshed("ya29.after-stop")

        oauth.refresh_access_token.side_effect = slow_refresh
        await manager.set_tokens(expiring_tokens)

        manager.start_monitoring()
        await asyncio.to_thread(started.wait, 5)
        refresh_task = manager._refresh_task
        assert refresh_task is not None

        await manager.stop_monitoring()
        assert not refresh_task.cancelled()

        release.set()
        result = await refresh_task

        assert result.tokens.access_token == "ya29.after-stop"
        assert token_manager.load_tokens().access_token == "ya29.after-stop"
