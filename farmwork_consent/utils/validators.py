"""
Validators for the FarmWork Hub consent service

Provides normalization of client metadata and validation of consent
decisions and retention settings.
"""

import ipaddress
import logging
from typing import Optional, Any

from ..constants import ConsentValues, RetentionDefaults, UNKNOWN
from ..exceptions import InvalidConsentValueError, ConsentRequiredError

logger = logging.getLogger(__name__)

IPV4_MAPPED_PREFIX = "::ffff:"

# =============================================================================
# CLIENT METADATA
# =============================================================================

def sanitize_ip(ip: Optional[str]) -> str:
    """
    Normalize a client IP address.

    Strips the IPv4-mapped IPv6 prefix and replaces anything that is not a
    valid IPv4 or IPv6 address with "unknown". Never raises.

    Args:
        ip: Raw address as seen by the HTTP layer

    Returns:
        Normalized address or "unknown"
    """
    if not ip or not isinstance(ip, str):
        return UNKNOWN

    candidate = ip.strip()
    if candidate.lower().startswith(IPV4_MAPPED_PREFIX):
        candidate = candidate[len(IPV4_MAPPED_PREFIX):]

    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        logger.debug("Unparseable client address replaced: %r", ip)
        return UNKNOWN


def sanitize_user_agent(user_agent: Optional[str]) -> str:
    """Return the user agent or "unknown" when absent"""
    if not user_agent or not isinstance(user_agent, str) or not user_agent.strip():
        return UNKNOWN
    return user_agent


# =============================================================================
# CONSENT VALUES
# =============================================================================

def validate_consent_value(
    value: Any,
    required: bool = True
) -> Optional[str]:
    """
    Validate a consent decision.

    Args:
        value: Value to validate
        required: Whether a missing value is an error

    Returns:
        The consent value, or None when optional and absent

    Raises:
        ConsentRequiredError: If required and missing
        InvalidConsentValueError: If not "accepted" or "declined"
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ConsentRequiredError()
        return None

    if hasattr(value, "value"):
        value = value.value

    if value not in ConsentValues.ALL:
        raise InvalidConsentValueError(value)

    return value


# =============================================================================
# RETENTION SETTINGS
# =============================================================================

def is_valid_retention_period(days: Any) -> bool:
    """Retention period must be an integer between 1 and 365 days"""
    return (
        isinstance(days, int)
        and not isinstance(days, bool)
        and RetentionDefaults.RETENTION_DAYS_MINIMUM <= days <= RetentionDefaults.RETENTION_DAYS_MAXIMUM
    )


def is_valid_batch_size(size: Any) -> bool:
    """Batch size must be an integer between 1 and 1000"""
    return (
        isinstance(size, int)
        and not isinstance(size, bool)
        and RetentionDefaults.BATCH_SIZE_MINIMUM <= size <= RetentionDefaults.BATCH_SIZE_MAXIMUM
    )
