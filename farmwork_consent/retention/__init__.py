"""
Retention enforcement for consent records and audit logs
"""

from .manager import (
    RetentionManager, CleanupResult, ArchiveResult, ArchiveFailure,
    LogMaintenanceResult, RetentionStats, ConfigurationReport,
    MaintenanceReport, StageError, MAINTENANCE_JOB_ID,
)

__all__ = [
    "RetentionManager",
    "CleanupResult",
    "ArchiveResult",
    "ArchiveFailure",
    "LogMaintenanceResult",
    "RetentionStats",
    "ConfigurationReport",
    "MaintenanceReport",
    "StageError",
    "MAINTENANCE_JOB_ID",
]
