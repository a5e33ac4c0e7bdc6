"""Legacy token migration and key rotation workflows."""

from gdrive_mcp.migration.orchestrator import (
    MigrationOrchestrator,
    MigrationReport,
    RotationReport,
    VerificationReport,
)

__all__ = [
    "MigrationOrchestrator",
    "MigrationReport",
    "RotationReport",
    "VerificationReport",
]
