"""Authentication state machine with proactive token refresh.

States::

    UNAUTHENTICATED -> AUTHENTICATED -> {TOKEN_EXPIRED, REFRESH_FAILED, TOKENS_REVOKED}

The manager keeps the in-memory copy of the stored tokens, refreshes them
through the OAuth client and persists every change through the TokenManager
before swapping its in-memory state.

Refresh is single-flight: the first caller starts one refresh task and every
concurrent caller awaits that same task, so N callers cause exactly one
network refresh and all observe the same result. Callers await the task
through ``asyncio.shield`` so that cancelling a caller (or the monitor at
shutdown) never cancels a refresh already in progress.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from google.oauth2.credentials import Credentials

from gdrive_mcp.auth.models import TokenData
from gdrive_mcp.auth.oauth import OAuthClient
from gdrive_mcp.auth.token_manager import TokenManager
from gdrive_mcp.middleware.audit_logger import AuditEvent, AuditLogger
from gdrive_mcp.utils.errors import (
    InvalidGrantError,
    RateLimitError,
    ReauthenticationRequiredError,
    TokenError,
    TransientRefreshError,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 30 * 60
DEFAULT_EXPIRY_BUFFER_SECONDS = 10 * 60
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RATE_LIMIT_DELAY_SECONDS = 60


class AuthState(str, Enum):
    """Authentication state of the running service."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    TOKENS_REVOKED = "tokens_revoked"


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of one single-flight refresh."""

    state: AuthState
    tokens: TokenData
    attempts: int


class AuthManager:
    """Owns the refresh state machine and the proactive expiry monitor.

    Example:
        >>> manager = AuthManager(token_manager, oauth_client, audit)
        >>> await manager.initialize()
        >>> token = await manager.get_access_token()
    """

    def __init__(
        self,
        token_manager: TokenManager,
        oauth_client: OAuthClient,
        audit_logger: AuditLogger,
        refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        expiry_buffer_seconds: float = DEFAULT_EXPIRY_BUFFER_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the auth manager.

        Args:
            token_manager: Encrypted token store.
            oauth_client: Client for the OAuth token endpoint.
            audit_logger: Audit log sink.
            refresh_interval_seconds: Period of the proactive check.
            expiry_buffer_seconds: Refresh when expiry is this close.
            max_retries: Bounded number of refresh attempts.
            retry_base_delay_seconds: First backoff delay; doubles per attempt.
            sleep: Awaitable sleep used for backoff and monitor ticks.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self._token_manager = token_manager
        self._oauth = oauth_client
        self._audit = audit_logger
        self._refresh_interval = refresh_interval_seconds
        self._expiry_buffer_ms = int(expiry_buffer_seconds * 1000)
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay_seconds
        self._sleep = sleep

        self._state = AuthState.UNAUTHENTICATED
        self._tokens: TokenData | None = None
        self._refresh_task: asyncio.Task[RefreshResult] | None = None
        self._monitor_task: asyncio.Task[None] | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> AuthState:
        """Current state; an authenticated session past expiry reads as expired."""
        if self._state == AuthState.AUTHENTICATED and self._tokens is not None:
            if self._tokens.is_expired():
                return AuthState.TOKEN_EXPIRED
        return self._state

    @property
    def tokens(self) -> TokenData | None:
        """In-memory copy of the stored tokens."""
        return self._tokens

    @property
    def is_monitoring(self) -> bool:
        """Whether the proactive monitor is running."""
        return self._monitor_task is not None and not self._monitor_task.done()

    @property
    def is_refreshing(self) -> bool:
        """Whether a refresh is in flight."""
        return self._refresh_task is not None and not self._refresh_task.done()

    def status(self) -> dict[str, Any]:
        """Summarize the session without exposing token values."""
        tokens = self._tokens
        return {
            "state": self.state.value,
            "has_access_token": tokens is not None,
            "has_refresh_token": bool(tokens and tokens.refresh_token),
            "expires_in_seconds": tokens.seconds_until_expiry() if tokens else None,
            "monitoring": self.is_monitoring,
            "refreshing": self.is_refreshing,
        }

    async def initialize(self) -> AuthState:
        """Load persisted tokens and start monitoring if there are any.

        Returns:
            The resulting state.

        Raises:
            LegacyTokenFormatError: If the token file must be migrated.
            CryptoError: If the stored envelope cannot be decrypted.
        """
        logger.info("Initializing AuthManager")
        tokens = await asyncio.to_thread(self._token_manager.load_tokens)

        if tokens is None:
            self._state = AuthState.UNAUTHENTICATED
            logger.info("No saved tokens found. Authentication required.")
            return self._state

        self._tokens = tokens
        self._state = AuthState.AUTHENTICATED
        logger.info("Loaded existing tokens successfully")
        self.start_monitoring()
        return self.state

    async def set_tokens(self, tokens: TokenData) -> None:
        """Persist tokens from a completed consent flow and adopt them."""
        await asyncio.to_thread(
            self._token_manager.save_tokens, tokens, AuditEvent.TOKEN_ACQUIRED
        )
        self._tokens = tokens
        self._state = AuthState.AUTHENTICATED
        logger.info("New tokens acquired and stored")

    async def handle_token_update(self, update: dict[str, Any]) -> TokenData:
        """Merge refreshed fields into the stored tokens and persist them.

        Refresh responses do not always carry a refresh token, so the
        previously stored one is kept unless the response rotated it. The
        merged tokens are written to disk before the in-memory copy is
        replaced.

        Raises:
            TokenError: If the merged tokens are invalid or cannot be saved.
        """
        merged: dict[str, Any] = self._tokens.model_dump() if self._tokens else {}
        merged.update({k: v for k, v in update.items() if v is not None})
        merged["refresh_token"] = update.get("refresh_token") or (
            self._tokens.refresh_token if self._tokens else None
        )

        if not TokenManager.is_valid_token_data(merged):
            raise TokenError(
                "Refreshed token data is incomplete",
                details={"fields": sorted(k for k, v in merged.items() if v is not None)},
            )
        tokens = TokenData.model_validate(merged)

        await asyncio.to_thread(
            self._token_manager.save_tokens, tokens, AuditEvent.TOKEN_REFRESHED
        )
        self._tokens = tokens
        self._state = AuthState.AUTHENTICATED
        logger.info(
            "Tokens refreshed and persisted (expires in %ds)",
            tokens.seconds_until_expiry(),
        )
        return tokens

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh_token(self) -> RefreshResult:
        """Refresh the access token, joining any refresh already in flight.

        Returns:
            The result shared by every concurrent caller.

        Raises:
            ReauthenticationRequiredError: If the refresh grant is unusable.
            TransientRefreshError: If every attempt failed transiently.
            TokenError: If the refreshed tokens could not be persisted.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._perform_token_refresh())
            self._refresh_task.add_done_callback(self._on_refresh_done)
        else:
            logger.debug("Token refresh already in progress, waiting...")
        return await asyncio.shield(self._refresh_task)

    def _on_refresh_done(self, task: asyncio.Task[RefreshResult]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Mark the outcome retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _perform_token_refresh(self) -> RefreshResult:
        """Run the bounded retry loop for one refresh."""
        current = self._tokens
        if current is None or not current.refresh_token:
            self._audit.log_event(
                AuditEvent.TOKEN_REFRESH_FAILED,
                success=False,
                metadata={"reason": "no_refresh_token"},
            )
            raise ReauthenticationRequiredError(
                "Authentication required - no refresh token available"
            )

        last_error: TransientRefreshError | None = None
        for attempt in range(1, self._max_retries + 1):
            logger.debug("Token refresh attempt %d/%d", attempt, self._max_retries)
            try:
                update = await asyncio.to_thread(
                    self._oauth.refresh_access_token, current.refresh_token
                )
            except InvalidGrantError as e:
                self._audit.log_event(
                    AuditEvent.TOKEN_REFRESH_FAILED,
                    success=False,
                    token=current.access_token,
                    metadata={"reason": "invalid_grant", "attempt": attempt},
                )
                await self._handle_invalid_grant()
                raise ReauthenticationRequiredError(
                    details={
                        "attempt": attempt,
                        "hint": "Run 'python -m gdrive_mcp auth'",
                    }
                ) from e
            except RateLimitError as e:
                last_error = e
                delay = (
                    e.retry_after_seconds
                    if e.retry_after_seconds is not None
                    else DEFAULT_RATE_LIMIT_DELAY_SECONDS
                )
                logger.warning(
                    "Token refresh rate limited (attempt %d), retry after %ss",
                    attempt,
                    delay,
                )
            except TransientRefreshError as e:
                last_error = e
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning("Token refresh failed (attempt %d): %s", attempt, e)
            else:
                tokens = await self.handle_token_update(update)
                logger.info("Token refreshed successfully")
                return RefreshResult(
                    state=AuthState.AUTHENTICATED, tokens=tokens, attempts=attempt
                )

            if attempt < self._max_retries:
                await self._sleep(delay)

        self._state = AuthState.REFRESH_FAILED
        self._audit.log_event(
            AuditEvent.TOKEN_REFRESH_FAILED,
            success=False,
            token=current.access_token,
            metadata={
                "reason": "retries_exhausted",
                "attempts": self._max_retries,
                "error_type": type(last_error).__name__,
            },
        )
        logger.error("Token refresh failed after %d attempts", self._max_retries)
        raise last_error or TransientRefreshError("Token refresh failed")

    async def _handle_invalid_grant(self) -> None:
        """Delete the unusable tokens and mark the session revoked."""
        logger.error("Refresh token is invalid or revoked")
        await asyncio.to_thread(self._token_manager.delete_tokens_on_invalid_grant)
        self._tokens = None
        self._state = AuthState.TOKENS_REVOKED

    async def get_access_token(self) -> str:
        """Return a usable access token, refreshing first if it is near expiry.

        Raises:
            ReauthenticationRequiredError: If there is no usable session.
        """
        if self._tokens is None:
            raise ReauthenticationRequiredError(
                "Authentication required - no tokens available",
                details={"state": self.state.value},
            )
        if self._tokens.expires_within(self._expiry_buffer_ms):
            result = await self.refresh_token()
            return result.tokens.access_token
        return self._tokens.access_token

    async def get_credentials(self) -> Credentials:
        """Return Google API credentials for a usable access token.

        Raises:
            ReauthenticationRequiredError: If there is no usable session.
        """
        await self.get_access_token()
        return self._oauth.get_credentials(self._tokens)

    async def revoke(self) -> bool:
        """Revoke tokens with Google and delete them locally.

        Returns:
            True if a token file was deleted.
        """
        await self.stop_monitoring()
        tokens = self._tokens
        if tokens is not None:
            revoked = await asyncio.to_thread(
                self._oauth.revoke_token, tokens.refresh_token or tokens.access_token
            )
            if not revoked:
                logger.warning("Google did not confirm revocation; deleting locally")

        deleted = await asyncio.to_thread(
            self._token_manager.delete_tokens,
            AuditEvent.TOKEN_REVOKED_BY_USER,
            "revoked by user",
        )
        self._tokens = None
        self._state = AuthState.TOKENS_REVOKED
        return deleted

    # =========================================================================
    # Proactive monitoring
    # =========================================================================

    async def check_and_refresh(self) -> RefreshResult | None:
        """Refresh if the token expires within the buffer.

        Errors are logged, not raised, so the monitor keeps running.

        Returns:
            The refresh result, or None if no refresh was needed or it failed.
        """
        tokens = self._tokens
        if tokens is None or not tokens.expires_within(self._expiry_buffer_ms):
            return None

        logger.info("Proactively refreshing token")
        try:
            return await self.refresh_token()
        except ReauthenticationRequiredError as e:
            logger.error("Proactive refresh requires re-authentication: %s", e)
        except (TransientRefreshError, TokenError) as e:
            logger.error("Proactive refresh failed: %s", e)
        except Exception as e:
            logger.exception("Unexpected error during proactive refresh")
            self._audit.log_event(
                AuditEvent.TOKEN_REFRESH_FAILED,
                success=False,
                metadata={"reason": "unexpected_error", "error_type": type(e).__name__},
            )
        return None

    def start_monitoring(self) -> None:
        """Start the proactive expiry monitor on the running event loop."""
        if self.is_monitoring:
            return
        self._monitor_task = asyncio.create_task(
            self._monitor_loop(), name="token-expiry-monitor"
        )
        logger.debug(
            "Started token monitoring (interval %ss)", self._refresh_interval
        )

    async def stop_monitoring(self) -> None:
        """Stop the monitor; an in-flight refresh is left to finish."""
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Stopped token monitoring")

    async def _monitor_loop(self) -> None:
        while True:
            await self.check_and_refresh()
            await self._sleep(self._refresh_interval)


__all__ = [
    "AuthManager",
    "AuthState",
    "RefreshResult",
]
