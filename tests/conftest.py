"""Shared fixtures for consent service tests."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Optional

import pytest

from farmwork_consent.audit.logger import FileAuditLogger
from farmwork_consent.audit.rotation import LogRotator
from farmwork_consent.config import ConsentSettings
from farmwork_consent.consent.models import ConsentRecord, ConsentValue
from farmwork_consent.consent.service import ConsentService
from farmwork_consent.consent.storage import InMemoryConsentRepository
from farmwork_consent.retention.manager import RetentionManager


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "logs"


@pytest.fixture
def settings(tmp_path, log_dir) -> ConsentSettings:
    return ConsentSettings(
        database_url=f"sqlite:///{tmp_path / 'consent.db'}",
        log_dir=str(log_dir),
        retention_period_days=30,
        batch_size=100,
        rotation_interval_ms=0,
        maintenance_enabled=False,
        admin_api_key="admin-secret",
        jwt_secret="test-jwt-secret-with-at-least-32-bytes",
    )


@pytest.fixture
def repository() -> InMemoryConsentRepository:
    return InMemoryConsentRepository()


@pytest.fixture
def audit_logger(log_dir) -> FileAuditLogger:
    return FileAuditLogger(log_dir)


@pytest.fixture
def rotator(log_dir, audit_logger) -> LogRotator:
    return LogRotator(log_dir, max_file_size=1024, max_files=3, audit_logger=audit_logger)


@pytest.fixture
def retention(repository, audit_logger, rotator, settings) -> RetentionManager:
    return RetentionManager(repository, audit_logger, rotator, settings)


@pytest.fixture
def service(repository, audit_logger, settings, retention) -> ConsentService:
    return ConsentService(repository, audit_logger, settings, retention=retention)


@pytest.fixture
def make_record() -> Callable[..., ConsentRecord]:
    """Build a consent record aged by the given number of days."""

    def _make(days_ago: float = 0, consent: ConsentValue = ConsentValue.ACCEPTED,
              user_id: Optional[str] = None, **kwargs: Any) -> ConsentRecord:
        return ConsentRecord(
            consent=consent,
            timestamp=datetime.now(UTC) - timedelta(days=days_ago),
            user_id=user_id,
            **kwargs,
        )

    return _make
