"""
Cryptographic utilities for the consent service
Audit log checksums and user bearer tokens
"""

from .hash import canonical_json, create_data_fingerprint, verify_data_fingerprint
from .jwt import (
    create_access_token,
    verify_access_token,
    extract_bearer_token,
    JWTError,
)

__all__ = [
    "canonical_json",
    "create_data_fingerprint",
    "verify_data_fingerprint",
    "create_access_token",
    "verify_access_token",
    "extract_bearer_token",
    "JWTError",
]
