"""
File audit logging for FarmWork Hub consent
Append-only NDJSON mirror of consent decisions and administrative actions
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..constants import (
    AuditActions, ConsentTokenDefaults, ConsentValues, LogFiles,
    HEALTH_CHECK_AGENT, HEALTH_CHECK_SESSION_PREFIX,
)
from ..crypto.hash import create_data_fingerprint, verify_data_fingerprint
from ..exceptions import AuditMirrorFailureError
from ..utils.ids import generate_access_id, generate_audit_id, generate_error_id

logger = structlog.get_logger(__name__)

CHECKSUM_FIELD = "checksum"

_locks: Dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


def file_lock(path: Union[str, Path]) -> threading.RLock:
    """Process-wide lock shared by every writer and rotator of a log file"""
    key = os.path.abspath(str(path))
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _locks[key] = lock
        return lock


def compute_checksum(entry: Mapping[str, Any]) -> str:
    """Fingerprint of an entry's content, excluding the checksum itself"""
    payload = {k: v for k, v in entry.items() if k != CHECKSUM_FIELD}
    return create_data_fingerprint(payload)


def verify_checksum(entry: Mapping[str, Any]) -> bool:
    """True when the stored checksum matches the entry content"""
    payload = {k: v for k, v in entry.items() if k != CHECKSUM_FIELD}
    return verify_data_fingerprint(payload, entry.get(CHECKSUM_FIELD))


def is_test_entry(entry: Mapping[str, Any]) -> bool:
    """Recognize health-check probes and explicit test entries"""
    if entry.get("test") is True:
        return True
    metadata = entry.get("metadata")
    if isinstance(metadata, Mapping) and metadata.get("test") is True:
        return True
    if entry.get("userAgent") == HEALTH_CHECK_AGENT:
        return True
    session_id = entry.get("sessionId")
    return isinstance(session_id, str) and session_id.startswith(HEALTH_CHECK_SESSION_PREFIX)


class LogPage(BaseModel):
    """Newest-first page of consent log entries"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    entries: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50
    skipped: int = 0


class LineError(BaseModel):
    line: int
    error: str


class IntegrityReport(BaseModel):
    """Line-level validation result for one log file"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file: str
    exists: bool = True
    total_lines: int = 0
    valid_lines: int = 0
    invalid_lines: int = 0
    errors: List[LineError] = Field(default_factory=list)


class FileAuditLogger:
    """Writes consent, audit and error entries to three independent log files"""

    def __init__(self, log_dir: Union[str, Path]):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.consent_log_path = self.log_dir / LogFiles.CONSENT
        self.audit_log_path = self.log_dir / LogFiles.AUDIT
        self.error_log_path = self.log_dir / LogFiles.ERRORS
        self.access_log_path = self.log_dir / LogFiles.ACCESS

    @property
    def log_paths(self) -> List[Path]:
        return [self.consent_log_path, self.audit_log_path, self.error_log_path,
                self.access_log_path]

    def resolve(self, file: Union[str, Path]) -> Path:
        """Map a short name (consent, audit, errors), file name or path to a log path"""
        name = str(file)
        if name in LogFiles.BY_NAME:
            return self.log_dir / LogFiles.BY_NAME[name]
        path = Path(file)
        return path if path.is_absolute() or path.parent != Path(".") else self.log_dir / path

    def _append(self, path: Path, entry: Dict[str, Any]) -> Dict[str, Any]:
        entry[CHECKSUM_FIELD] = compute_checksum(entry)
        line = json.dumps(entry, default=str, separators=(",", ":")) + "\n"
        try:
            with file_lock(path):
                with open(path, "a", encoding="utf-8") as handle:
                    handle.write(line)
        except OSError as e:
            raise AuditMirrorFailureError(str(path), str(e)) from e
        return entry

    def log_consent(self, entry: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Append a consent decision to the consent log

        Args:
            entry: JSON-ready consent data, must carry an id

        Returns:
            The written entry including its checksum

        Raises:
            AuditMirrorFailureError: If the file cannot be written
        """
        data = {k: v for k, v in entry.items() if k != CHECKSUM_FIELD}
        data.setdefault("timestamp", datetime.now(UTC).isoformat())
        written = self._append(self.consent_log_path, data)
        logger.debug("Consent mirrored to file", consent_id=written.get("id"))
        return written

    def log_audit_entry(self, action: str, record_id: Optional[str] = None,
                        ip: Optional[str] = None, user_id: Optional[str] = None,
                        details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Append an administrative or consent action to the audit log"""
        entry = {
            "id": generate_audit_id(),
            "timestamp": datetime.now(UTC).isoformat(),
            "action": action,
            "recordId": record_id,
            "ip": ip,
            "userId": user_id,
            "details": details or {},
        }
        written = self._append(self.audit_log_path, entry)
        logger.debug("Audit entry logged", action=action, record_id=record_id)
        return written

    def log_error(self, error_type: str, error: BaseException,
                  context: Optional[Dict[str, Any]] = None) -> bool:
        """Append an error entry; never raises"""
        entry = {
            "id": generate_error_id(),
            "timestamp": datetime.now(UTC).isoformat(),
            "type": error_type,
            "errorClass": type(error).__name__,
            "message": str(error),
            "context": context or {},
        }
        try:
            self._append(self.error_log_path, entry)
            return True
        except AuditMirrorFailureError as e:
            logger.error("Failed to write error log", error_type=error_type,
                         original_error=str(error), error=str(e))
            return False

    def log_consented_access(self, token: str, endpoint: str, method: str,
                             ip: Optional[str] = None,
                             user_agent: Optional[str] = None) -> Dict[str, Any]:
        """Append one request made under a verified consent token to the access log"""
        entry = {
            "id": generate_access_id(),
            "timestamp": datetime.now(UTC).isoformat(),
            "consentToken": token,
            "endpoint": endpoint,
            "method": method,
            "ip": ip,
            "userAgent": user_agent,
        }
        return self._append(self.access_log_path, entry)

    def verify_consent_token(self, token: Optional[str],
                             max_age: timedelta = timedelta(days=ConsentTokenDefaults.MAX_AGE_DAYS),
                             now: Optional[datetime] = None) -> bool:
        """
        Check a consent token against the consent log

        A token is the id of a consent log entry. It is valid when that entry
        is an accepted decision younger than max_age.

        Args:
            token: Consent log entry id presented by the client
            max_age: Oldest acceptable decision
            now: Reference time, defaults to the current UTC time

        Returns:
            True if the token names a recent accepted decision
        """
        if not token:
            return False
        try:
            lines = self._read_lines(self.consent_log_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Failed to read consent log for token check", error=str(e))
            return False

        cutoff = (now or datetime.now(UTC)) - max_age
        for line in reversed(lines):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict) or entry.get("id") != token:
                continue

            if entry.get("consent") != ConsentValues.ACCEPTED:
                return False
            try:
                issued = datetime.fromisoformat(entry.get("timestamp"))
            except (TypeError, ValueError):
                return False
            if issued.tzinfo is None:
                issued = issued.replace(tzinfo=UTC)
            return issued > cutoff

        return False

    def _read_lines(self, path: Path) -> List[str]:
        with file_lock(path):
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                return handle.read().splitlines()

    def read_consent_logs(self, page: int = 1, limit: int = 50) -> LogPage:
        """Read the consent log newest first, skipping unparseable lines"""
        page = max(page, 1)
        limit = max(limit, 1)
        if not self.consent_log_path.exists():
            return LogPage(page=page, limit=limit)

        entries: List[Dict[str, Any]] = []
        skipped = 0
        for line in self._read_lines(self.consent_log_path):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(entry, dict):
                skipped += 1
                continue
            entries.append(entry)

        if skipped:
            logger.warning("Skipped invalid consent log lines", count=skipped)

        entries.reverse()
        start = (page - 1) * limit
        return LogPage(
            entries=entries[start:start + limit],
            total=len(entries),
            page=page,
            limit=limit,
            skipped=skipped,
        )

    def validate_log_integrity(self, file: Union[str, Path] = LogFiles.AUDIT) -> IntegrityReport:
        """Classify every line of a log file as valid or invalid"""
        path = self.resolve(file)
        report = IntegrityReport(file=str(path))
        if not path.exists():
            report.exists = False
            return report

        for number, line in enumerate(self._read_lines(path), start=1):
            if not line.strip():
                continue
            report.total_lines += 1
            problem = None
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                entry = None
                problem = f"malformed JSON: {e.msg}"

            if problem is None:
                if not isinstance(entry, dict):
                    problem = "entry is not an object"
                elif not entry.get("id"):
                    problem = "missing id"
                elif not entry.get("timestamp"):
                    problem = "missing timestamp"
                elif CHECKSUM_FIELD in entry and not verify_checksum(entry):
                    problem = "checksum mismatch"

            if problem:
                report.invalid_lines += 1
                report.errors.append(LineError(line=number, error=problem))
            else:
                report.valid_lines += 1

        logger.info("Log integrity checked", file=str(path),
                    valid=report.valid_lines, invalid=report.invalid_lines)
        return report

    def remove_test_entries(self, file: Union[str, Path] = LogFiles.CONSENT) -> int:
        """Rewrite a log without health-check and test entries"""
        path = self.resolve(file)
        if not path.exists():
            return 0

        removed = 0
        with file_lock(path):
            kept: List[str] = []
            for line in self._read_lines(path):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    kept.append(line)
                    continue
                if isinstance(entry, dict) and is_test_entry(entry):
                    removed += 1
                else:
                    kept.append(line)

            if removed:
                fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.writelines(f"{line}\n" for line in kept)
                    os.replace(tmp_path, path)
                except OSError:
                    if os.path.exists(tmp_path):
                        os.unlink(tmp_path)
                    raise

        if removed:
            logger.info("Removed test entries", file=str(path), count=removed)
            self.log_audit_entry(AuditActions.TEST_ENTRIES_PURGED,
                                 details={"file": path.name, "removed": removed})
        return removed
