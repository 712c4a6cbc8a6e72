"""
FarmWork Hub Consent Service
Consent recording, retention enforcement and audit logging for FarmWork Hub
"""

__version__ = "1.0.0"
__author__ = "FarmWork Hub"

# Core exports
from .config import ConsentSettings, RetentionPolicy, get_consent_settings

# Consent recording
from .consent import (
    ConsentRecord, ConsentArchive, ConsentValue, ConsentFilter, ConsentStats,
    ConsentExport, ConsentRepository, SQLConsentRepository,
    InMemoryConsentRepository, ConsentService,
)

# Audit trail
from .audit import FileAuditLogger, LogRotator

# Retention
from .retention import RetentionManager, MaintenanceReport

# Errors
from .exceptions import (
    ConsentServiceError, InvalidConsentValueError, ConsentRequiredError,
    ConsentTokenRequiredError, InvalidConsentTokenError, UnauthorizedError,
    PersistenceFailureError, AuditMirrorFailureError, ConfigurationInvalidError,
)

from .runtime import ConsentRuntime

__all__ = [
    # Config
    "ConsentSettings",
    "RetentionPolicy",
    "get_consent_settings",

    # Consent
    "ConsentRecord",
    "ConsentArchive",
    "ConsentValue",
    "ConsentFilter",
    "ConsentStats",
    "ConsentExport",
    "ConsentRepository",
    "SQLConsentRepository",
    "InMemoryConsentRepository",
    "ConsentService",

    # Audit
    "FileAuditLogger",
    "LogRotator",

    # Retention
    "RetentionManager",
    "MaintenanceReport",

    # Errors
    "ConsentServiceError",
    "InvalidConsentValueError",
    "ConsentRequiredError",
    "ConsentTokenRequiredError",
    "InvalidConsentTokenError",
    "UnauthorizedError",
    "PersistenceFailureError",
    "AuditMirrorFailureError",
    "ConfigurationInvalidError",

    # Runtime
    "ConsentRuntime",
]
