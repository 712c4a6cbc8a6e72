"""
Utility functions for the consent service
ID generation, client metadata normalization and validation
"""

from .ids import (
    generate_consent_id,
    generate_session_id,
    generate_audit_id,
    generate_error_id,
    generate_access_id,
    generate_health_check_session_id,
)
from .validators import (
    sanitize_ip,
    sanitize_user_agent,
    validate_consent_value,
    is_valid_retention_period,
    is_valid_batch_size,
)

__all__ = [
    # ID generation
    "generate_consent_id",
    "generate_session_id",
    "generate_audit_id",
    "generate_error_id",
    "generate_access_id",
    "generate_health_check_session_id",
    # Validators
    "sanitize_ip",
    "sanitize_user_agent",
    "validate_consent_value",
    "is_valid_retention_period",
    "is_valid_batch_size",
]
