"""Fixtures for tool tests."""

from __future__ import annotations

import pytest

from gdrive_mcp.auth.auth_manager import AuthManager, AuthState


@pytest.fixture
def mock_auth_manager(mocker):
    """AuthManager double with an authenticated status."""
    manager = mocker.MagicMock(spec=AuthManager)
    manager.state = AuthState.AUTHENTICATED
    manager.status.return_value = {
        "state": "authenticated",
        "has_access_token": True,
        "has_refresh_token": True,
        "expires_in_seconds": 3000,
        "monitoring": True,
        "refreshing": False,
    }
    manager.refresh_token = mocker.AsyncMock()
    return manager
