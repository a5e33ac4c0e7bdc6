"""Health check reporting token validity and refresh capability.

Used by the ``health`` command (container health checks). The result is
printed as JSON and mapped to an exit code: 0 healthy, 1 degraded,
2 unhealthy.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from gdrive_mcp.auth.auth_manager import AuthState
from gdrive_mcp.auth.oauth import load_client_keys
from gdrive_mcp.auth.token_manager import DEFAULT_EXPIRY_BUFFER_MS, TokenManager
from gdrive_mcp.utils.errors import GDriveMCPError, LegacyTokenFormatError

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Overall health verdict."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"

    @property
    def exit_code(self) -> int:
        return {"HEALTHY": 0, "DEGRADED": 1, "UNHEALTHY": 2}[self.value]


class CheckResult(BaseModel):
    """Outcome of a single check."""

    status: Literal["pass", "warn", "fail"]
    message: str
    metadata: dict[str, Any] | None = None


class HealthChecks(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_status: CheckResult = Field(..., alias="tokenStatus")
    refresh_capability: CheckResult = Field(..., alias="refreshCapability")


class HealthCheckResult(BaseModel):
    """JSON document printed by the health command."""

    model_config = ConfigDict(populate_by_name=True)

    status: HealthStatus
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    checks: HealthChecks
    metrics: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def check_health(
    token_manager: TokenManager,
    oauth_path: Path | None = None,
    expiry_buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS,
) -> HealthCheckResult:
    """Inspect the stored tokens and classify service health.

    Args:
        token_manager: Token store to inspect.
        oauth_path: OAuth client file needed for refresh; checked if given.
        expiry_buffer_ms: Window in which a valid token counts as degraded.
    """
    started = time.perf_counter()
    status = HealthStatus.HEALTHY
    refresh = CheckResult(status="pass", message="Token refresh capability available")

    try:
        if oauth_path is not None:
            load_client_keys(oauth_path)
        tokens = token_manager.load_tokens()
    except LegacyTokenFormatError:
        token_check = CheckResult(
            status="fail", message="Legacy token format - migration required"
        )
        refresh = CheckResult(status="fail", message="Cannot verify refresh capability")
        status = HealthStatus.UNHEALTHY
    except GDriveMCPError as e:
        logger.error("Health check error: %s", e)
        token_check = CheckResult(status="fail", message=f"Health check failed: {e.message}")
        refresh = CheckResult(status="fail", message="Cannot verify refresh capability")
        status = HealthStatus.UNHEALTHY
    else:
        if tokens is None:
            token_check = CheckResult(status="fail", message="No tokens found")
            status = HealthStatus.UNHEALTHY
        elif tokens.is_expired():
            token_check = CheckResult(
                status="fail",
                message="Token is expired",
                metadata={"state": AuthState.TOKEN_EXPIRED.value},
            )
            status = HealthStatus.UNHEALTHY
        elif tokens.expires_within(expiry_buffer_ms):
            token_check = CheckResult(
                status="warn",
                message="Token expiring soon",
                metadata={
                    "expiresIn": tokens.seconds_until_expiry(),
                    "state": AuthState.AUTHENTICATED.value,
                },
            )
            status = HealthStatus.DEGRADED
        else:
            token_check = CheckResult(
                status="pass",
                message="Token is valid",
                metadata={
                    "expiresIn": tokens.seconds_until_expiry(),
                    "state": AuthState.AUTHENTICATED.value,
                },
            )

        if tokens is not None and not tokens.refresh_token:
            refresh = CheckResult(status="fail", message="No refresh token available")
            status = HealthStatus.UNHEALTHY
        elif tokens is None:
            refresh = CheckResult(status="fail", message="No refresh token available")

    return HealthCheckResult(
        status=status,
        checks=HealthChecks(token_status=token_check, refresh_capability=refresh),
        metrics={"executionTimeMs": round((time.perf_counter() - started) * 1000, 2)},
    )


__all__ = [
    "CheckResult",
    "HealthCheckResult",
    "HealthStatus",
    "check_health",
]
