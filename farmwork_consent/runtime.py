"""
Runtime wiring for the consent service

Builds the repository, audit trail, rotator, retention manager and consent
service from one settings object, and owns the scheduler they share.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .audit.logger import FileAuditLogger
from .audit.rotation import LogRotator
from .config import ConsentSettings, get_consent_settings
from .consent.service import ConsentService
from .consent.storage import ConsentRepository, SQLConsentRepository
from .retention.manager import RetentionManager

logger = structlog.get_logger(__name__)


class ConsentRuntime:
    """Explicitly constructed service graph, passed to the HTTP layer at startup"""

    def __init__(self, settings: Optional[ConsentSettings] = None,
                 repository: Optional[ConsentRepository] = None,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.settings = settings or get_consent_settings()
        self.repository = repository or SQLConsentRepository(self.settings.database_url)
        self.audit_logger = FileAuditLogger(self.settings.log_dir)
        self.scheduler = scheduler
        self.rotator = LogRotator(
            self.settings.log_dir,
            max_file_size=self.settings.max_log_file_size,
            max_files=self.settings.max_log_files,
            audit_logger=self.audit_logger,
            scheduler=scheduler,
        )
        self.retention = RetentionManager(self.repository, self.audit_logger,
                                          self.rotator, self.settings)
        self.service = ConsentService(self.repository, self.audit_logger,
                                      self.settings, retention=self.retention)
        self._started = False

    def start(self) -> None:
        """Register background jobs; must run inside the event loop"""
        if self._started:
            return

        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler()
            self.rotator.scheduler = self.scheduler

        if self.settings.rotation_interval_ms > 0:
            self.rotator.schedule_rotation(self.settings.rotation_interval_ms)

        if self.settings.maintenance_enabled:
            self.retention.schedule_maintenance(self.scheduler,
                                                self.settings.maintenance_interval_hours)

        if not self.scheduler.running:
            self.scheduler.start()

        self._started = True
        logger.info("Consent runtime started",
                    rotation_interval_ms=self.settings.rotation_interval_ms,
                    maintenance_enabled=self.settings.maintenance_enabled,
                    retention_policy=self.settings.retention_policy.value)

    def close(self) -> None:
        """Stop background jobs and release the database"""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.repository.close()
        self._started = False
        logger.info("Consent runtime closed")
