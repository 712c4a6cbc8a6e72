"""
Content checksums for tamper-evident audit log lines
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

CHECKSUM_ALGORITHM = "sha256"


def canonical_json(data: Dict[str, Any]) -> str:
    """Key-sorted compact JSON; identical content always yields identical text"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def create_data_fingerprint(data: Dict[str, Any]) -> str:
    """Hex SHA-256 digest of an entry's canonical JSON"""
    return hashlib.new(CHECKSUM_ALGORITHM, canonical_json(data).encode("utf-8")).hexdigest()


def verify_data_fingerprint(data: Dict[str, Any], expected_hash: Optional[str]) -> bool:
    """
    Compare an entry against a stored fingerprint

    Args:
        data: Entry content without the fingerprint
        expected_hash: Fingerprint read back from the log

    Returns:
        False when the fingerprint is absent, malformed or does not match
    """
    if not isinstance(expected_hash, str):
        return False
    return hmac.compare_digest(
        create_data_fingerprint(data).encode("utf-8"),
        expected_hash.encode("utf-8"),
    )
