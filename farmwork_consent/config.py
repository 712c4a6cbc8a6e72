"""
Configuration management for the FarmWork Hub consent service
Retention policy, audit log locations, rotation limits and credentials
"""

from enum import Enum
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field

from .constants import ConsentTokenDefaults, RetentionDefaults, RotationDefaults


class RetentionPolicy(str, Enum):
    """What happens to consent records past the retention window"""
    DELETE = "delete"
    ARCHIVE = "archive"


class ConsentSettings(BaseSettings):
    """Consent service configuration settings"""

    # Storage
    database_url: str = Field(default="sqlite:///consent.db")
    log_dir: str = Field(default="logs", description="Directory holding the NDJSON audit trail")
    consent_version: str = Field(default="1.0", description="Consent policy version in effect")

    # Retention settings (bounds are checked by validate_configuration, not here)
    retention_period_days: int = Field(default=RetentionDefaults.RETENTION_PERIOD_DAYS)
    retention_policy: RetentionPolicy = Field(default=RetentionPolicy.DELETE)
    batch_size: int = Field(default=RetentionDefaults.BATCH_SIZE)
    archive_concurrency: int = Field(default=RetentionDefaults.ARCHIVE_CONCURRENCY)
    cleanup_threshold_percent: float = Field(default=RetentionDefaults.CLEANUP_THRESHOLD_PERCENT)

    # Log rotation settings
    log_retention_days: int = Field(default=RotationDefaults.LOG_RETENTION_DAYS)
    max_log_file_size: int = Field(default=RotationDefaults.MAX_FILE_SIZE, description="Bytes")
    max_log_files: int = Field(default=RotationDefaults.MAX_FILES)
    rotation_interval_ms: int = Field(
        default=RotationDefaults.INTERVAL_MS,
        description="Rotation check interval, 0 disables the scheduled check"
    )

    # Scheduled maintenance
    maintenance_enabled: bool = Field(default=False)
    maintenance_interval_hours: int = Field(default=24)

    # Credentials
    admin_api_key: Optional[str] = Field(default=None, description="Static admin bearer key")
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiry_minutes: int = Field(default=15)

    # Request handling
    trust_proxy: bool = Field(default=False, description="Read client IP from X-Forwarded-For")
    consent_token_max_age_days: int = Field(default=ConsentTokenDefaults.MAX_AGE_DAYS)

    # Environment-specific overrides
    environment: str = Field(default="development")
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "FARMWORK_CONSENT_", "case_sensitive": False}


# Global configuration instance
consent_settings = ConsentSettings()


def get_consent_settings() -> ConsentSettings:
    """Get the global consent settings instance"""
    return consent_settings
