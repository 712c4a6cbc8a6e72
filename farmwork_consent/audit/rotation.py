"""
Log rotation for the consent audit trail

Caps the size of each active log file and the number of rotated siblings,
and moves old rotated files into the archive directory. Recurring checks run
as an APScheduler interval job.
"""

import os
import re
import shutil
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Iterable, List, Optional, Union

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..constants import AuditActions, ErrorTypes, LogFiles, RotationDefaults
from .logger import FileAuditLogger, file_lock

logger = structlog.get_logger(__name__)

ROTATION_JOB_ID = "log_rotation"


def rotation_suffix(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC instant made safe for file names"""
    now = now or datetime.now(UTC)
    return now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def rotated_pattern(path: Path) -> "re.Pattern[str]":
    return re.compile(
        rf"^{re.escape(path.stem)}-(?P<stamp>\d{{4}}-\d{{2}}-\d{{2}}T[\d-]+Z)"
        rf"(?:-(?P<counter>\d+))?{re.escape(path.suffix)}$"
    )


class LogRotator:
    """Size-based rotation with a cap on retained rotated files"""

    def __init__(self, log_dir: Union[str, Path],
                 max_file_size: int = RotationDefaults.MAX_FILE_SIZE,
                 max_files: int = RotationDefaults.MAX_FILES,
                 audit_logger: Optional[FileAuditLogger] = None,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.log_dir = Path(log_dir)
        self.archive_dir = self.log_dir / LogFiles.ARCHIVE_DIR
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.audit_logger = audit_logger
        self.scheduler = scheduler

    def _resolve(self, file: Union[str, Path]) -> Path:
        path = Path(file)
        return path if path.parent != Path(".") or path.is_absolute() else self.log_dir / path

    @property
    def default_files(self) -> List[Path]:
        return [self.log_dir / name for name in LogFiles.ALL]

    def should_rotate(self, file: Union[str, Path]) -> bool:
        """True when the file exists and is larger than the configured maximum"""
        path = self._resolve(file)
        try:
            return path.stat().st_size > self.max_file_size
        except FileNotFoundError:
            return False

    def rotated_files(self, file: Union[str, Path]) -> List[Path]:
        """Rotated siblings of a log file, oldest first"""
        path = self._resolve(file)
        if not path.parent.exists():
            return []
        pattern = rotated_pattern(path)
        matches = []
        for candidate in path.parent.iterdir():
            match = pattern.match(candidate.name)
            if match and candidate.is_file():
                matches.append((match.group("stamp"), int(match.group("counter") or 0), candidate))
        # Fixed-width UTC stamps sort by age; collision counters break ties numerically
        return [p for _, _, p in sorted(matches)]

    def rotate_file(self, file: Union[str, Path]) -> Optional[Path]:
        """
        Move the current file aside and start a fresh empty one

        Args:
            file: Log file to rotate

        Returns:
            Path of the rotated copy, None if the file does not exist
        """
        path = self._resolve(file)
        with file_lock(path):
            if not path.exists():
                return None

            target = path.with_name(f"{path.stem}-{rotation_suffix()}{path.suffix}")
            counter = 1
            while target.exists():
                target = path.with_name(f"{path.stem}-{rotation_suffix()}-{counter}{path.suffix}")
                counter += 1

            os.replace(path, target)
            path.touch()

        pruned = self.prune(path)
        logger.info("Rotated log file", file=str(path), rotated_to=str(target), pruned=len(pruned))

        if self.audit_logger:
            self.audit_logger.log_audit_entry(
                AuditActions.LOG_ROTATED,
                details={"file": path.name, "rotatedTo": target.name,
                         "pruned": [p.name for p in pruned]},
            )
        return target

    def prune(self, file: Union[str, Path]) -> List[Path]:
        """Delete the oldest rotated siblings beyond max_files"""
        rotated = self.rotated_files(file)
        excess = len(rotated) - self.max_files
        if excess <= 0:
            return []

        removed = []
        for old in rotated[:excess]:
            try:
                old.unlink()
                removed.append(old)
            except FileNotFoundError:
                continue
        return removed

    def rotate_if_needed(self, files: Optional[Iterable[Union[str, Path]]] = None) -> List[Path]:
        """Rotate every file above the size limit"""
        rotated = []
        for file in files or self.default_files:
            if self.should_rotate(file):
                target = self.rotate_file(file)
                if target:
                    rotated.append(target)
        return rotated

    def archive_old_logs(self, retention_days: int,
                         files: Optional[Iterable[Union[str, Path]]] = None) -> List[Path]:
        """Move rotated files older than the retention window into the archive directory"""
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).timestamp()
        moved: List[Path] = []

        for file in files or self.default_files:
            for rotated in self.rotated_files(file):
                if rotated.stat().st_mtime >= cutoff:
                    continue
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                destination = self.archive_dir / rotated.name
                shutil.move(str(rotated), str(destination))
                moved.append(destination)

        if moved:
            logger.info("Archived old log files", count=len(moved), retention_days=retention_days)
            if self.audit_logger:
                self.audit_logger.log_audit_entry(
                    AuditActions.LOGS_ARCHIVED,
                    details={"files": [p.name for p in moved], "retentionDays": retention_days},
                )
        return moved

    def _scheduled_check(self, files: Optional[List[Path]] = None) -> None:
        try:
            self.rotate_if_needed(files)
        except Exception as e:
            logger.error("Scheduled log rotation failed", error=str(e))
            if self.audit_logger:
                self.audit_logger.log_error(ErrorTypes.LOG_MAINTENANCE_FAILURE, e, {"stage": "scheduled_rotation"})

    def schedule_rotation(self, interval_ms: int = RotationDefaults.INTERVAL_MS,
                          files: Optional[Iterable[Union[str, Path]]] = None):
        """Register a recurring rotation check; cancel with cancel_rotation()"""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler()

        job = self.scheduler.add_job(
            self._scheduled_check,
            trigger=IntervalTrigger(seconds=interval_ms / 1000),
            args=[list(files) if files else None],
            id=ROTATION_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        logger.info("Log rotation scheduled", interval_ms=interval_ms)
        return job

    def cancel_rotation(self) -> bool:
        """Remove the recurring rotation check if one is scheduled"""
        if self.scheduler is None or self.scheduler.get_job(ROTATION_JOB_ID) is None:
            return False
        self.scheduler.remove_job(ROTATION_JOB_ID)
        logger.info("Log rotation cancelled")
        return True
