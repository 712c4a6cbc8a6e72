"""
Constants for the FarmWork Hub consent service

Centralized values for consent decisions, log file names, audit actions,
retention bounds and error codes.
"""

from typing import Final, Tuple

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "consent-service"
SERVICE_VERSION: Final[str] = "1.0.0"

# =============================================================================
# CONSENT VALUES
# =============================================================================

class ConsentValues:
    """Allowed consent decisions"""
    ACCEPTED: Final[str] = "accepted"
    DECLINED: Final[str] = "declined"

    ALL: Final[Tuple[str, ...]] = (ACCEPTED, DECLINED)


UNKNOWN: Final[str] = "unknown"
HEALTH_CHECK_AGENT: Final[str] = "health-check"
HEALTH_CHECK_SESSION_PREFIX: Final[str] = "health-check-"

# Request headers copied into consent metadata
TRACKED_HEADERS: Final[Tuple[str, ...]] = ("accept-language", "dnt", "referer")

# =============================================================================
# LOG FILES
# =============================================================================

class LogFiles:
    """File names of the NDJSON audit trail"""
    CONSENT: Final[str] = "consent.log"
    AUDIT: Final[str] = "consent-audit.log"
    ERRORS: Final[str] = "consent-errors.log"
    ACCESS: Final[str] = "consented-access.log"
    ARCHIVE_DIR: Final[str] = "archive"

    ALL: Final[Tuple[str, ...]] = (CONSENT, AUDIT, ERRORS, ACCESS)

    # Short names accepted by the integrity endpoint
    BY_NAME = {
        "consent": CONSENT,
        "audit": AUDIT,
        "errors": ERRORS,
        "access": ACCESS,
    }


# =============================================================================
# AUDIT ACTIONS
# =============================================================================

class AuditActions:
    """Action names written to the audit log"""
    CONSENT_WITHDRAWN: Final[str] = "consent_withdrawn"
    DATA_EXPORTED: Final[str] = "data_exported"
    CONSENTS_CLEANED: Final[str] = "consents_cleaned"
    CONSENTS_ARCHIVED: Final[str] = "consents_archived"
    LOG_ROTATED: Final[str] = "log_rotated"
    LOGS_ARCHIVED: Final[str] = "logs_archived"
    TEST_ENTRIES_PURGED: Final[str] = "test_entries_purged"
    MAINTENANCE_COMPLETED: Final[str] = "maintenance_completed"


class ErrorTypes:
    """Error categories written to the error log"""
    AUDIT_MIRROR_FAILURE: Final[str] = "audit_mirror_failure"
    CLEANUP_FAILURE: Final[str] = "cleanup_failure"
    ARCHIVE_FAILURE: Final[str] = "archive_failure"
    LOG_MAINTENANCE_FAILURE: Final[str] = "log_maintenance_failure"
    MAINTENANCE_FAILURE: Final[str] = "maintenance_failure"


# =============================================================================
# RETENTION
# =============================================================================

class RetentionDefaults:
    """Retention window and batching bounds"""
    RETENTION_PERIOD_DAYS: Final[int] = 365
    RETENTION_DAYS_MINIMUM: Final[int] = 1
    RETENTION_DAYS_MAXIMUM: Final[int] = 365

    BATCH_SIZE: Final[int] = 100
    BATCH_SIZE_MINIMUM: Final[int] = 1
    BATCH_SIZE_MAXIMUM: Final[int] = 1000

    ARCHIVE_CONCURRENCY: Final[int] = 10
    CLEANUP_THRESHOLD_PERCENT: Final[float] = 10.0


class ConsentTokenDefaults:
    """Consent token lookup"""
    HEADER: Final[str] = "x-consent-token"
    QUERY_PARAM: Final[str] = "consentToken"
    MAX_AGE_DAYS: Final[int] = 365


class RotationDefaults:
    """Log rotation limits"""
    MAX_FILE_SIZE: Final[int] = 10 * 1024 * 1024  # 10MB
    MAX_FILES: Final[int] = 5
    INTERVAL_MS: Final[int] = 60 * 60 * 1000
    LOG_RETENTION_DAYS: Final[int] = 365


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Machine-readable error codes returned by the HTTP layer"""
    UNKNOWN_ERROR: Final[str] = "UNKNOWN_ERROR"
    VALIDATION_ERROR: Final[str] = "VALIDATION_ERROR"

    CONSENT_REQUIRED: Final[str] = "CONSENT_REQUIRED"
    INVALID_CONSENT_VALUE: Final[str] = "INVALID_CONSENT_VALUE"
    UNAUTHORIZED: Final[str] = "UNAUTHORIZED"
    AUTH_REQUIRED: Final[str] = "AUTH_REQUIRED"
    INVALID_CONSENT: Final[str] = "INVALID_CONSENT"
    PERSISTENCE_FAILURE: Final[str] = "PERSISTENCE_FAILURE"
    AUDIT_MIRROR_FAILURE: Final[str] = "AUDIT_MIRROR_FAILURE"
    CONFIGURATION_INVALID: Final[str] = "CONFIGURATION_INVALID"

    # Endpoint failures
    CONSENT_LOG_ERROR: Final[str] = "CONSENT_LOG_ERROR"
    CONSENT_RECORD_ERROR: Final[str] = "CONSENT_RECORD_ERROR"
    STATS_ERROR: Final[str] = "STATS_ERROR"
    HISTORY_ERROR: Final[str] = "HISTORY_ERROR"
    LATEST_CONSENT_ERROR: Final[str] = "LATEST_CONSENT_ERROR"
    CONSENT_CHECK_ERROR: Final[str] = "CONSENT_CHECK_ERROR"
    WITHDRAW_ERROR: Final[str] = "WITHDRAW_ERROR"
    EXPORT_ERROR: Final[str] = "EXPORT_ERROR"
    CLEANUP_ERROR: Final[str] = "CLEANUP_ERROR"
    MAINTENANCE_ERROR: Final[str] = "MAINTENANCE_ERROR"
    RETENTION_ERROR: Final[str] = "RETENTION_ERROR"
    LOG_READ_ERROR: Final[str] = "LOG_READ_ERROR"
    HEALTH_CHECK_ERROR: Final[str] = "HEALTH_CHECK_ERROR"
