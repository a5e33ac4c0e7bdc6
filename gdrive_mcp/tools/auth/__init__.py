"""Authentication tools package.

- get_auth_status: Report the session state
- refresh_token: Force an access token refresh
"""

from gdrive_mcp.tools.auth.refresh import refresh_token
from gdrive_mcp.tools.auth.status import get_auth_status

__all__ = [
    "get_auth_status",
    "refresh_token",
]
