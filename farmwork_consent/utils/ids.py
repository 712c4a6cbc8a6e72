"""
ID generation utilities for the consent service
Unique identifiers for consent records, sessions and audit entries
"""

import time
import uuid

from ..constants import HEALTH_CHECK_SESSION_PREFIX


def generate_consent_id() -> str:
    """Generate consent record ID"""
    return str(uuid.uuid4())


def generate_session_id() -> str:
    """Generate a session ID grouping one device's consent activity"""
    return str(uuid.uuid4())


def generate_audit_id() -> str:
    """Generate audit log entry ID"""
    return f"audit_{uuid.uuid4()}"


def generate_error_id() -> str:
    """Generate error log entry ID"""
    return f"error_{uuid.uuid4()}"


def generate_access_id() -> str:
    """Generate consented-access log entry ID"""
    return f"access_{uuid.uuid4()}"


def generate_health_check_session_id() -> str:
    """Session ID used by the health-check probe record"""
    return f"{HEALTH_CHECK_SESSION_PREFIX}{int(time.time() * 1000)}"
