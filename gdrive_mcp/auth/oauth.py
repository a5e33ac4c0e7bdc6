"""Google OAuth 2.0 client for consent, refresh and revocation.

This module wraps the network side of OAuth for the token vault:

1. Consent flow (``auth`` command): opens a browser for user consent and
   runs a local HTTP server to receive the authorization callback.

2. Refresh grant: exchanges the stored refresh token for a new access
   token and classifies failures as permanent (invalid_grant), rate
   limited (429, with the server's Retry-After) or transient.

3. Revocation: revokes a token with Google before it is deleted locally.

Security considerations:
- Uses a random state parameter for CSRF protection in the consent flow
- Reads client credentials from the OAuth keys file, never from token data
- Requests offline access so a refresh token is issued
"""

from __future__ import annotations

import errno
import json
import logging
import secrets
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from gdrive_mcp.auth.models import TokenData, now_ms
from gdrive_mcp.utils.errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidGrantError,
    RateLimitError,
    TransientRefreshError,
)

logger = logging.getLogger(__name__)

# Google Workspace scopes requested at consent
WORKSPACE_SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/documents",
    "https://www.googleapis.com/auth/forms",
    "https://www.googleapis.com/auth/script.projects.readonly",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.compose",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]

# Google OAuth endpoints
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"

DEFAULT_RETRY_AFTER_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 30


def load_client_keys(path: Path) -> dict[str, Any]:
    """Read an OAuth client file downloaded from Google Cloud Console.

    Accepts both the ``installed`` (desktop) and ``web`` client layouts.

    Raises:
        ConfigurationError: If the file is missing or has neither block.
    """
    try:
        content = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(
            "OAuth configuration not found",
            details={"path": str(path), "hint": "Set GDRIVE_OAUTH_PATH"},
        ) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            "OAuth configuration is not valid JSON",
            details={"path": str(path), "error_message": str(e)},
        ) from e

    keys = content.get("installed") or content.get("web") if isinstance(content, dict) else None
    if not keys or not keys.get("client_id") or not keys.get("client_secret"):
        raise ConfigurationError(
            "Invalid OAuth keys format",
            details={"path": str(path), "hint": "Expected an 'installed' or 'web' block"},
        )
    return keys


class OAuthClient:
    """Network client for the Google OAuth 2.0 endpoints.

    Attributes:
        _client_id: Google OAuth client ID.
        _client_secret: Google OAuth client secret.
        _redirect_uri: OAuth callback URI for the consent flow.

    Example:
        >>> client = OAuthClient.from_keys_file(Path("gcp-oauth.keys.json"))
        >>> tokens = client.run_local_server()
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str | None = None,
        oauth_port: int = 3000,
        token_uri: str = GOOGLE_TOKEN_URI,
        scopes: list[str] | None = None,
    ) -> None:
        """Initialize the OAuth client."""
        self._client_id = client_id
        self._client_secret = client_secret
        self._oauth_port = oauth_port
        self._redirect_uri = redirect_uri or f"http://localhost:{oauth_port}/oauth/callback"
        self._token_uri = token_uri
        self._scopes = scopes or WORKSPACE_SCOPES

    @classmethod
    def from_keys_file(cls, path: Path, oauth_port: int = 3000) -> OAuthClient:
        """Build a client from an OAuth keys file."""
        keys = load_client_keys(path)
        redirect_uris = keys.get("redirect_uris") or []
        return cls(
            client_id=keys["client_id"],
            client_secret=keys["client_secret"],
            redirect_uri=redirect_uris[0] if redirect_uris else None,
            oauth_port=oauth_port,
            token_uri=keys.get("token_uri", GOOGLE_TOKEN_URI),
        )

    @property
    def oauth_port(self) -> int:
        """Port for the consent callback server."""
        return self._oauth_port

    def _get_client_config(self) -> dict[str, Any]:
        """Build OAuth client configuration in google-auth-oauthlib format."""
        return {
            "installed": {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": self._token_uri,
                "redirect_uris": [self._redirect_uri],
            }
        }

    # =========================================================================
    # Refresh grant
    # =========================================================================

    def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: The stored refresh token.

        Returns:
            Token fields from the response: access_token, expiry_date (epoch
            ms), token_type, scope and, only if the server rotated it,
            refresh_token.

        Raises:
            InvalidGrantError: If the refresh grant is revoked or expired.
            RateLimitError: If the endpoint answered 429.
            TransientRefreshError: For network errors and other failures.
        """
        try:
            response = requests.post(
                self._token_uri,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.warning("Network error refreshing token: %s", e)
            raise TransientRefreshError(
                f"Network error refreshing token: {e}",
                details={"error_type": type(e).__name__},
            ) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(
                f"Token endpoint rate limited. Retry after {retry_after} seconds.",
                retry_after_seconds=retry_after,
                details={"status_code": 429},
            )

        data = _json_body(response)
        error = data.get("error")

        if error == "invalid_grant":
            raise InvalidGrantError(
                "Refresh token is invalid or revoked",
                details={
                    "status_code": response.status_code,
                    "error_description": data.get("error_description"),
                },
            )

        if response.status_code != 200 or "access_token" not in data:
            raise TransientRefreshError(
                f"Token refresh failed: {error or response.status_code}",
                details={"status_code": response.status_code, "error": error},
            )

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError) as e:
            raise TransientRefreshError(
                "Token endpoint returned an invalid expires_in",
                details={"status_code": response.status_code},
            ) from e
        if not isinstance(data["access_token"], str) or not data["access_token"]:
            raise TransientRefreshError(
                "Token endpoint returned an invalid access_token",
                details={"status_code": response.status_code},
            )

        result: dict[str, Any] = {
            "access_token": data["access_token"],
            "expiry_date": now_ms() + expires_in * 1000,
            "token_type": data.get("token_type", "Bearer"),
        }
        if data.get("scope"):
            result["scope"] = data["scope"]
        if data.get("refresh_token"):
            result["refresh_token"] = data["refresh_token"]

        logger.info("Successfully refreshed access token")
        return result

    def revoke_token(self, token: str) -> bool:
        """Revoke a token with Google.

        Returns:
            True if Google accepted the revocation, False otherwise.
        """
        try:
            response = requests.post(
                GOOGLE_REVOKE_URI,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.warning("Network error revoking token: %s", e)
            return False

        if response.status_code != 200:
            logger.warning("Token revocation returned HTTP %d", response.status_code)
            return False

        logger.info("Token revoked with Google")
        return True

    # =========================================================================
    # Consent flow
    # =========================================================================

    def create_auth_url(self, state: str | None = None) -> tuple[str, str]:
        """Create authorization URL for user consent.

        Args:
            state: Optional state parameter for CSRF protection.
                If not provided, a random 32-byte state is generated.

        Returns:
            Tuple of (auth_url, state).
        """
        if state is None:
            state = secrets.token_urlsafe(32)

        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }

        auth_url = f"{GOOGLE_AUTH_URI}?{urlencode(params)}"
        logger.debug("Created auth URL with state: %s", state[:8] + "...")
        return auth_url, state

    def exchange_code(self, code: str) -> TokenData:
        """Exchange an authorization code for tokens.

        Raises:
            AuthenticationError: If the exchange fails or Google did not
                issue a refresh token.
        """
        flow = Flow.from_client_config(
            self._get_client_config(),
            scopes=self._scopes,
            redirect_uri=self._redirect_uri,
        )

        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error("Failed to exchange authorization code: %s", e)
            raise AuthenticationError(
                f"Failed to exchange authorization code: {e}",
                details={"error_type": type(e).__name__},
            ) from e

        credentials = flow.credentials
        if not credentials.refresh_token:
            raise AuthenticationError(
                "Google did not return a refresh token",
                details={"hint": "Revoke the app's access and run 'auth' again"},
            )

        expiry_ms = (
            int(credentials.expiry.timestamp() * 1000)
            if credentials.expiry
            else now_ms() + 3600 * 1000
        )
        logger.info("Successfully exchanged authorization code for tokens")
        return TokenData(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expiry_date=expiry_ms,
            token_type="Bearer",
            scope=" ".join(credentials.scopes or self._scopes),
        )

    def get_credentials(self, tokens: TokenData) -> Credentials:
        """Build a Credentials object from stored tokens.

        The result is what Google API clients expect; the Workspace tool
        handlers build their service objects from it.
        """
        return Credentials(  # type: ignore[no-untyped-call]
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=self._token_uri,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=tokens.scope.split() if tokens.scope else self._scopes,
        )

    def _create_server(
        self,
        handler_class: type[BaseHTTPRequestHandler],
        port: int,
        max_attempts: int = 3,
    ) -> tuple[HTTPServer, int]:
        """Create HTTP server with fallback ports.

        Raises:
            AuthenticationError: If all port attempts fail.
        """
        for attempt in range(max_attempts):
            try_port = port + attempt
            try:
                server = HTTPServer(("localhost", try_port), handler_class)
                if attempt > 0:
                    logger.info(
                        "Using fallback port %d (port %d was in use)",
                        try_port,
                        port,
                    )
                return server, try_port
            except OSError as e:
                if e.errno == errno.EADDRINUSE or "Address already in use" in str(e):
                    logger.warning(
                        "Port %d in use, trying %d...", try_port, try_port + 1
                    )
                    continue
                raise

        raise AuthenticationError(
            f"Could not bind to ports {port}-{port + max_attempts - 1}. "
            "All ports are in use.",
            details={"attempted_ports": list(range(port, port + max_attempts))},
        )

    def run_local_server(self, timeout: int = 120) -> TokenData:
        """Run the consent flow with a browser and a loopback callback.

        Args:
            timeout: Seconds to wait for the user to complete consent.

        Returns:
            Tokens issued for the consented scopes.

        Raises:
            AuthenticationError: If consent fails, times out, or the
                callback state does not match.
        """
        result: dict[str, str] = {}
        error: AuthenticationError | None = None
        state: str = ""

        class CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for the OAuth callback."""

            def _reply(handler_self, status: int, body: bytes) -> None:  # noqa: N805
                handler_self.send_response(status)
                handler_self.send_header("Content-type", "text/html")
                handler_self.end_headers()
                handler_self.wfile.write(body)

            def do_GET(handler_self) -> None:  # noqa: N802, N805
                nonlocal error
                parsed = urlparse(handler_self.path)

                if parsed.path != "/oauth/callback":
                    handler_self.send_response(404)
                    handler_self.end_headers()
                    return

                params = parse_qs(parsed.query)

                if "error" in params:
                    error_msg = params["error"][0]
                    error = AuthenticationError(
                        f"OAuth error: {error_msg}",
                        details={"oauth_error": error_msg},
                    )
                    handler_self._reply(
                        400, b"<html><body><h1>Authentication Failed</h1></body></html>"
                    )
                    return

                returned_state = params.get("state", [""])[0]
                if not secrets.compare_digest(returned_state, state):
                    error = AuthenticationError(
                        "State mismatch - possible CSRF attack",
                        details={"hint": "Request may have been tampered with"},
                    )
                    handler_self._reply(
                        400, b"<html><body><h1>Security Error</h1></body></html>"
                    )
                    return

                code = params.get("code", [None])[0]
                if code:
                    result["code"] = code
                    handler_self._reply(
                        200,
                        b"<html><body><h1>Authentication Successful!</h1>"
                        b"<p>You can close this window.</p></body></html>",
                    )
                else:
                    error = AuthenticationError(
                        "No authorization code received",
                        details={"params": list(params.keys())},
                    )
                    handler_self._reply(
                        400, b"<html><body><h1>Error</h1></body></html>"
                    )

            def log_message(handler_self, format: str, *args: object) -> None:  # noqa: N805
                logger.debug("OAuth callback server: %s", format % args)

        server, actual_port = self._create_server(CallbackHandler, self._oauth_port)
        server.timeout = timeout

        # The redirect URI must name the port actually bound
        original_redirect = self._redirect_uri
        if actual_port != self._oauth_port:
            self._redirect_uri = f"http://localhost:{actual_port}/oauth/callback"

        try:
            auth_url, state = self.create_auth_url()
            logger.info("Opening browser for authentication...")
            webbrowser.open(auth_url)
            server.handle_request()
            server.server_close()

            if error:
                raise error
            if "code" not in result:
                raise AuthenticationError(
                    "Authentication timed out",
                    details={"timeout_seconds": timeout},
                )
            return self.exchange_code(result["code"])
        finally:
            self._redirect_uri = original_redirect


def _parse_retry_after(value: str | None) -> int:
    """Parse a Retry-After header given in seconds."""
    if value is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(value))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def _json_body(response: requests.Response) -> dict[str, Any]:
    """Decode a JSON object body, tolerating non-JSON error pages."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


__all__ = [
    "OAuthClient",
    "WORKSPACE_SCOPES",
    "GOOGLE_AUTH_URI",
    "GOOGLE_TOKEN_URI",
    "GOOGLE_REVOKE_URI",
    "load_client_keys",
]
