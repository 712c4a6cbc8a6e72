"""Tests for validators, identifiers, settings and token helpers."""

from __future__ import annotations

import pytest

from farmwork_consent.config import ConsentSettings, RetentionPolicy
from farmwork_consent.consent.models import ConsentValue
from farmwork_consent.crypto.jwt import (
    JWTInvalidError,
    create_access_token,
    create_jwt,
    extract_bearer_token,
    verify_access_token,
)
from farmwork_consent.exceptions import ConsentRequiredError, InvalidConsentValueError
from farmwork_consent.utils.ids import generate_audit_id, generate_health_check_session_id
from farmwork_consent.utils.validators import (
    is_valid_batch_size,
    is_valid_retention_period,
    sanitize_ip,
    sanitize_user_agent,
    validate_consent_value,
)

SECRET = "unit-test-secret-that-is-long-enough"


class TestValidators:

    @pytest.mark.parametrize("raw, expected", [
        ("203.0.113.5", "203.0.113.5"),
        ("::ffff:198.51.100.7", "198.51.100.7"),
        ("2001:db8::1", "2001:db8::1"),
        ("testclient", "unknown"),
        ("", "unknown"),
        (None, "unknown"),
    ])
    def test_sanitize_ip(self, raw, expected) -> None:
        assert sanitize_ip(raw) == expected

    def test_sanitize_user_agent(self) -> None:
        assert sanitize_user_agent("Mozilla/5.0") == "Mozilla/5.0"
        assert sanitize_user_agent("   ") == "unknown"
        assert sanitize_user_agent(None) == "unknown"

    def test_validate_consent_value(self) -> None:
        assert validate_consent_value("accepted") == "accepted"
        assert validate_consent_value(ConsentValue.DECLINED) == "declined"
        assert validate_consent_value(None, required=False) is None

        with pytest.raises(ConsentRequiredError):
            validate_consent_value("")
        with pytest.raises(InvalidConsentValueError):
            validate_consent_value("ACCEPTED")

    def test_retention_bounds(self) -> None:
        assert is_valid_retention_period(1)
        assert is_valid_retention_period(365)
        assert not is_valid_retention_period(0)
        assert not is_valid_retention_period(366)
        assert not is_valid_retention_period(True)
        assert not is_valid_retention_period("30")

    def test_batch_bounds(self) -> None:
        assert is_valid_batch_size(1)
        assert is_valid_batch_size(1000)
        assert not is_valid_batch_size(0)
        assert not is_valid_batch_size(1001)


class TestIdentifiers:

    def test_prefixes(self) -> None:
        assert generate_audit_id().startswith("audit_")
        assert generate_health_check_session_id().startswith("health-check-")


class TestSettings:

    def test_defaults(self) -> None:
        settings = ConsentSettings()

        assert settings.retention_period_days == 365
        assert settings.retention_policy == RetentionPolicy.DELETE
        assert settings.batch_size == 100
        assert settings.max_log_file_size == 10 * 1024 * 1024
        assert settings.max_log_files == 5
        assert settings.trust_proxy is False

    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("FARMWORK_CONSENT_RETENTION_POLICY", "archive")
        monkeypatch.setenv("FARMWORK_CONSENT_BATCH_SIZE", "5000")

        settings = ConsentSettings()

        assert settings.retention_policy == RetentionPolicy.ARCHIVE
        # Out-of-range values load and are reported by validate_configuration
        assert settings.batch_size == 5000


class TestTokens:

    def test_access_token_roundtrip(self) -> None:
        token = create_access_token("user-7", SECRET)

        assert verify_access_token(token, SECRET) == "user-7"

    def test_non_access_token_rejected(self) -> None:
        token = create_jwt({"sub": "user-7", "type": "refresh"}, SECRET)

        with pytest.raises(JWTInvalidError):
            verify_access_token(token, SECRET)

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_extract_bearer_token_rejects(self, header) -> None:
        with pytest.raises(JWTInvalidError):
            extract_bearer_token(header)

    def test_extract_bearer_token(self) -> None:
        assert extract_bearer_token("Bearer abc.def") == "abc.def"
