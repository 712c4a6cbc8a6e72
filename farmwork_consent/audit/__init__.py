"""
Audit subpackage for FarmWork Hub consent

Append-only NDJSON logs of consent decisions, administrative actions and
errors, plus size-based rotation of those files.
"""

from .logger import (
    FileAuditLogger, IntegrityReport, LineError, LogPage,
    compute_checksum, verify_checksum, is_test_entry, file_lock,
)
from .rotation import LogRotator, ROTATION_JOB_ID

__all__ = [
    "FileAuditLogger",
    "IntegrityReport",
    "LineError",
    "LogPage",
    "compute_checksum",
    "verify_checksum",
    "is_test_entry",
    "file_lock",
    "LogRotator",
    "ROTATION_JOB_ID",
]
