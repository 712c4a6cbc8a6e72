"""
Retention enforcement for FarmWork Hub consent records

Deletes or archives consent records older than the configured retention
window in bounded batches, and runs log maintenance. Every operation reports
partial failures instead of raising them to the caller.
"""

import asyncio
import time
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

import structlog
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import Field

from ..audit.logger import FileAuditLogger
from ..audit.rotation import LogRotator
from ..config import ConsentSettings, RetentionPolicy
from ..consent.models import CamelModel, ConsentFilter, ConsentRecord
from ..consent.storage import ConsentRepository
from ..constants import AuditActions, ErrorTypes, RetentionDefaults
from ..exceptions import AuditMirrorFailureError, ConfigurationInvalidError
from ..utils.validators import is_valid_batch_size, is_valid_retention_period

logger = structlog.get_logger(__name__)

MAINTENANCE_JOB_ID = "consent_maintenance"


class StageError(CamelModel):
    stage: str
    error: str


class BatchProgress(CamelModel):
    batch: int
    processed: int


class CleanupResult(CamelModel):
    deleted_count: int = 0
    batches: List[BatchProgress] = Field(default_factory=list)
    cutoff: datetime
    errors: List[StageError] = Field(default_factory=list)


class ArchiveFailure(CamelModel):
    id: str
    error: str


class ArchiveResult(CamelModel):
    archived_count: int = 0
    already_archived: int = 0
    failed: List[ArchiveFailure] = Field(default_factory=list)
    batches: List[BatchProgress] = Field(default_factory=list)
    cutoff: datetime
    errors: List[StageError] = Field(default_factory=list)


class LogMaintenanceResult(CamelModel):
    rotated: List[str] = Field(default_factory=list)
    archived: List[str] = Field(default_factory=list)
    test_entries_removed: int = 0
    errors: List[StageError] = Field(default_factory=list)


class RetentionStats(CamelModel):
    total: int
    expired: int
    recent: int
    archived: int
    percentage_expired: float
    cleanup_recommended: bool
    retention_period_days: int
    cutoff: datetime


class ConfigurationReport(CamelModel):
    valid: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class MaintenanceReport(CamelModel):
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    policy: RetentionPolicy
    configuration: Optional[ConfigurationReport] = None
    consents_deleted: int = 0
    consents_archived: int = 0
    logs: Optional[LogMaintenanceResult] = None
    stats: Optional[RetentionStats] = None
    errors: List[StageError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class RetentionManager:
    """Applies the configured retention policy to consent records and logs"""

    def __init__(self, repository: ConsentRepository,
                 audit_logger: FileAuditLogger,
                 rotator: LogRotator,
                 settings: ConsentSettings):
        self.repository = repository
        self.audit_logger = audit_logger
        self.rotator = rotator
        self.settings = settings

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(UTC)
        return now - timedelta(days=self.settings.retention_period_days)

    def _record_failure(self, error_type: str, error: BaseException,
                        context: Optional[Dict[str, Any]] = None) -> None:
        self.audit_logger.log_error(error_type, error, context)

    def _audit(self, action: str, details: Dict[str, Any]) -> None:
        try:
            self.audit_logger.log_audit_entry(action, details=details)
        except AuditMirrorFailureError as e:
            logger.error("Failed to write audit entry", action=action, error=str(e))
            self._record_failure(ErrorTypes.AUDIT_MIRROR_FAILURE, e, {"action": action})

    async def cleanup_expired_consents(self) -> CleanupResult:
        """Delete expired consent records in fixed-size batches"""
        batch_size = self.settings.batch_size
        result = CleanupResult(cutoff=self.cutoff())
        batch_number = 0

        while True:
            batch_number += 1
            try:
                deleted = await asyncio.to_thread(
                    self.repository.delete_older_than, result.cutoff, batch_size
                )
            except Exception as e:
                logger.error("Cleanup batch failed", batch=batch_number,
                             deleted_so_far=result.deleted_count, error=str(e))
                result.errors.append(StageError(stage=f"batch_{batch_number}", error=str(e)))
                self._record_failure(ErrorTypes.CLEANUP_FAILURE, e,
                                     {"batch": batch_number, "deletedSoFar": result.deleted_count})
                break

            if deleted == 0:
                break

            result.deleted_count += deleted
            result.batches.append(BatchProgress(batch=batch_number, processed=deleted))
            logger.info("Cleanup batch completed", batch=batch_number, deleted=deleted)

            if deleted < batch_size:
                break

        logger.info("Expired consents cleaned up", deleted=result.deleted_count,
                    batches=len(result.batches), cutoff=result.cutoff.isoformat())
        self._audit(AuditActions.CONSENTS_CLEANED, {
            "deletedCount": result.deleted_count,
            "batches": len(result.batches),
            "cutoff": result.cutoff.isoformat(),
            "errors": len(result.errors),
        })
        return result

    async def _archive_record(self, record: ConsentRecord) -> bool:
        return await asyncio.to_thread(self.repository.archive_consent, record)

    async def archive_old_consents(self) -> ArchiveResult:
        """Copy expired consent records into the archive, then remove them from the live table"""
        batch_size = self.settings.batch_size
        concurrency = max(self.settings.archive_concurrency, 1)
        result = ArchiveResult(cutoff=self.cutoff())
        failed_ids: set = set()
        batch_number = 0

        while True:
            try:
                page = await asyncio.to_thread(
                    self.repository.find_older_than, result.cutoff, batch_size, failed_ids
                )
            except Exception as e:
                logger.error("Failed to load expired consents", error=str(e))
                result.errors.append(StageError(stage="load", error=str(e)))
                self._record_failure(ErrorTypes.ARCHIVE_FAILURE, e, {"stage": "load"})
                break

            if not page:
                break

            batch_number += 1
            processed = 0
            for start in range(0, len(page), concurrency):
                chunk = page[start:start + concurrency]
                outcomes = await asyncio.gather(
                    *(self._archive_record(record) for record in chunk),
                    return_exceptions=True,
                )
                for record, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, BaseException):
                        failed_ids.add(record.id)
                        result.failed.append(ArchiveFailure(id=record.id, error=str(outcome)))
                        logger.error("Failed to archive consent", consent_id=record.id,
                                     error=str(outcome))
                        self._record_failure(ErrorTypes.ARCHIVE_FAILURE, outcome,
                                             {"consentId": record.id})
                        continue
                    processed += 1
                    if outcome:
                        result.archived_count += 1
                    else:
                        result.already_archived += 1

            result.batches.append(BatchProgress(batch=batch_number, processed=processed))

        logger.info("Expired consents archived", archived=result.archived_count,
                    already_archived=result.already_archived, failed=len(result.failed))
        self._audit(AuditActions.CONSENTS_ARCHIVED, {
            "archivedCount": result.archived_count,
            "alreadyArchived": result.already_archived,
            "failed": [f.id for f in result.failed],
            "cutoff": result.cutoff.isoformat(),
        })
        return result

    async def apply_retention_policy(self) -> int:
        """Run the configured policy and return how many live records were removed"""
        if self.settings.retention_policy == RetentionPolicy.ARCHIVE:
            archived = await self.archive_old_consents()
            return archived.archived_count + archived.already_archived
        cleaned = await self.cleanup_expired_consents()
        return cleaned.deleted_count

    async def cleanup_old_logs(self) -> LogMaintenanceResult:
        """Rotate oversized logs, archive old rotated logs and purge test entries"""
        result = LogMaintenanceResult()

        try:
            rotated = await asyncio.to_thread(self.rotator.rotate_if_needed)
            result.rotated = [p.name for p in rotated]
        except Exception as e:
            result.errors.append(StageError(stage="rotation", error=str(e)))
            self._record_failure(ErrorTypes.LOG_MAINTENANCE_FAILURE, e, {"stage": "rotation"})

        try:
            archived = await asyncio.to_thread(
                self.rotator.archive_old_logs, self.settings.log_retention_days
            )
            result.archived = [p.name for p in archived]
        except Exception as e:
            result.errors.append(StageError(stage="log_archival", error=str(e)))
            self._record_failure(ErrorTypes.LOG_MAINTENANCE_FAILURE, e, {"stage": "log_archival"})

        try:
            result.test_entries_removed = await asyncio.to_thread(
                self.audit_logger.remove_test_entries
            )
        except Exception as e:
            result.errors.append(StageError(stage="test_entries", error=str(e)))
            self._record_failure(ErrorTypes.LOG_MAINTENANCE_FAILURE, e, {"stage": "test_entries"})

        logger.info("Log maintenance completed", rotated=len(result.rotated),
                    archived=len(result.archived), test_entries_removed=result.test_entries_removed,
                    errors=len(result.errors))
        return result

    async def get_retention_stats(self) -> RetentionStats:
        """Counts used to decide whether a cleanup is worth running"""
        cutoff = self.cutoff()
        total = await asyncio.to_thread(self.repository.count_by_filter, ConsentFilter())
        expired = await asyncio.to_thread(self.repository.count_older_than, cutoff)
        archived = await asyncio.to_thread(self.repository.count_archived)

        percentage = round(expired / total * 100, 2) if total else 0.0
        return RetentionStats(
            total=total,
            expired=expired,
            recent=total - expired,
            archived=archived,
            percentage_expired=percentage,
            cleanup_recommended=expired > 0 and percentage >= self.settings.cleanup_threshold_percent,
            retention_period_days=self.settings.retention_period_days,
            cutoff=cutoff,
        )

    async def validate_configuration(self) -> ConfigurationReport:
        """Check retention bounds, batch size and database reachability without raising"""
        errors: List[str] = []
        checks = {
            "retention_period": is_valid_retention_period(self.settings.retention_period_days),
            "batch_size": is_valid_batch_size(self.settings.batch_size),
        }
        if not checks["retention_period"]:
            errors.append(
                f"retention_period_days must be between {RetentionDefaults.RETENTION_DAYS_MINIMUM} "
                f"and {RetentionDefaults.RETENTION_DAYS_MAXIMUM}, got {self.settings.retention_period_days}"
            )
        if not checks["batch_size"]:
            errors.append(
                f"batch_size must be between {RetentionDefaults.BATCH_SIZE_MINIMUM} "
                f"and {RetentionDefaults.BATCH_SIZE_MAXIMUM}, got {self.settings.batch_size}"
            )

        try:
            checks["database"] = await asyncio.to_thread(self.repository.ping)
        except Exception as e:
            logger.error("Database probe raised", error=str(e))
            checks["database"] = False
        if not checks["database"]:
            errors.append("database is not reachable")

        return ConfigurationReport(valid=not errors, checks=checks, errors=errors)

    async def perform_maintenance(self) -> MaintenanceReport:
        """Run retention, log maintenance and statistics, collecting failures per stage"""
        started = time.monotonic()
        report = MaintenanceReport(started_at=datetime.now(UTC),
                                   policy=self.settings.retention_policy)

        report.configuration = await self.validate_configuration()
        if not report.configuration.valid:
            error = ConfigurationInvalidError(report.configuration.errors)
            logger.error("Maintenance blocked by invalid configuration",
                         errors=report.configuration.errors)
            report.errors.append(StageError(stage="configuration", error=error.message))
            self._record_failure(ErrorTypes.MAINTENANCE_FAILURE, error, {"stage": "configuration"})
            return self._finish(report, started)

        try:
            if self.settings.retention_policy == RetentionPolicy.ARCHIVE:
                archived = await self.archive_old_consents()
                report.consents_archived = archived.archived_count + archived.already_archived
                report.errors.extend(archived.errors)
                report.errors.extend(
                    StageError(stage="archive", error=f"{f.id}: {f.error}") for f in archived.failed
                )
            else:
                cleaned = await self.cleanup_expired_consents()
                report.consents_deleted = cleaned.deleted_count
                report.errors.extend(
                    StageError(stage="cleanup", error=e.error) for e in cleaned.errors
                )
        except Exception as e:
            report.errors.append(StageError(stage="retention", error=str(e)))
            self._record_failure(ErrorTypes.MAINTENANCE_FAILURE, e, {"stage": "retention"})

        try:
            report.logs = await self.cleanup_old_logs()
            report.errors.extend(
                StageError(stage=f"logs.{e.stage}", error=e.error) for e in report.logs.errors
            )
        except Exception as e:
            report.errors.append(StageError(stage="logs", error=str(e)))
            self._record_failure(ErrorTypes.MAINTENANCE_FAILURE, e, {"stage": "logs"})

        try:
            report.stats = await self.get_retention_stats()
        except Exception as e:
            report.errors.append(StageError(stage="stats", error=str(e)))
            self._record_failure(ErrorTypes.MAINTENANCE_FAILURE, e, {"stage": "stats"})

        return self._finish(report, started)

    def _finish(self, report: MaintenanceReport, started: float) -> MaintenanceReport:
        report.completed_at = datetime.now(UTC)
        report.duration_ms = round((time.monotonic() - started) * 1000, 2)
        logger.info("Maintenance finished", policy=report.policy.value,
                    deleted=report.consents_deleted, archived=report.consents_archived,
                    errors=len(report.errors), duration_ms=report.duration_ms)
        self._audit(AuditActions.MAINTENANCE_COMPLETED, {
            "policy": report.policy.value,
            "consentsDeleted": report.consents_deleted,
            "consentsArchived": report.consents_archived,
            "errors": len(report.errors),
            "durationMs": report.duration_ms,
        })
        return report

    def schedule_maintenance(self, scheduler, interval_hours: int = 24) -> None:
        """
        Register the maintenance run with the shared APScheduler instance.

        Args:
            scheduler: The application's AsyncIOScheduler
            interval_hours: How often to run (default: once daily)
        """
        scheduler.add_job(
            self.perform_maintenance,
            trigger=IntervalTrigger(hours=interval_hours),
            id=MAINTENANCE_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        logger.info("Consent maintenance scheduled", interval_hours=interval_hours,
                    policy=self.settings.retention_policy.value)
