"""
Consent service for FarmWork Hub
Single authority for recording and querying consent decisions
"""

import asyncio
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

import structlog

from .models import (
    ConsentExport,
    ConsentFilter,
    ConsentRecord,
    ConsentStats,
    ConsentValue,
    DailyConsentCounts,
)
from .storage import ConsentRepository
from ..audit.logger import FileAuditLogger
from ..config import ConsentSettings
from ..constants import AuditActions, ErrorTypes, HEALTH_CHECK_AGENT
from ..exceptions import AuditMirrorFailureError, PersistenceFailureError
from ..utils.ids import generate_health_check_session_id, generate_session_id
from ..utils.validators import sanitize_ip, sanitize_user_agent, validate_consent_value

if TYPE_CHECKING:
    from ..retention.manager import RetentionManager

logger = structlog.get_logger(__name__)


class ConsentService:
    """Records consent decisions and answers questions about them.

    The relational repository is authoritative. Every decision is mirrored to
    the file audit log on a best-effort basis: a mirror failure is reported to
    the error log but never undoes or hides a successful database write.
    """

    def __init__(self, repository: ConsentRepository,
                 audit_logger: FileAuditLogger,
                 settings: ConsentSettings,
                 retention: Optional["RetentionManager"] = None):
        self.repository = repository
        self.audit_logger = audit_logger
        self.settings = settings
        self.retention = retention

    def _mirror_consent(self, record: ConsentRecord) -> bool:
        try:
            self.audit_logger.log_consent(record.to_log_entry())
            return True
        except AuditMirrorFailureError as e:
            logger.error("Consent audit mirror failed", consent_id=record.id, error=str(e))
            self.audit_logger.log_error(
                ErrorTypes.AUDIT_MIRROR_FAILURE, e,
                {"consentId": record.id, "userId": record.user_id},
            )
            return False

    def _audit(self, action: str, record_id: Optional[str] = None,
               ip: Optional[str] = None, user_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.audit_logger.log_audit_entry(action, record_id=record_id, ip=ip,
                                              user_id=user_id, details=details)
        except AuditMirrorFailureError as e:
            logger.error("Audit entry failed", action=action, error=str(e))
            self.audit_logger.log_error(ErrorTypes.AUDIT_MIRROR_FAILURE, e,
                                        {"action": action, "recordId": record_id})

    async def record_consent(self, consent: Any, ip: Optional[str] = None,
                             user_agent: Optional[str] = None,
                             metadata: Optional[Dict[str, Any]] = None,
                             user_id: Optional[str] = None,
                             session_id: Optional[str] = None) -> ConsentRecord:
        """
        Record a consent decision

        Args:
            consent: "accepted" or "declined"
            ip: Raw client address, normalized before storage
            user_agent: Client user agent
            metadata: Free-form context stored with the record
            user_id: Owning user, None for anonymous consent
            session_id: Device session, generated when absent

        Returns:
            The stored consent record

        Raises:
            InvalidConsentValueError: If consent is not an allowed value
            PersistenceFailureError: If the database write fails
        """
        value = validate_consent_value(consent)

        record = ConsentRecord(
            consent=ConsentValue(value),
            ip=sanitize_ip(ip),
            user_agent=sanitize_user_agent(user_agent),
            user_id=str(user_id) if user_id is not None else None,
            session_id=session_id or generate_session_id(),
            metadata=dict(metadata or {}),
            version=self.settings.consent_version,
        )

        try:
            await asyncio.to_thread(self.repository.insert_consent, record)
        except Exception as e:
            logger.error("Error recording consent", user_id=record.user_id, error=str(e))
            raise PersistenceFailureError("record_consent", str(e)) from e

        await asyncio.to_thread(self._mirror_consent, record)

        logger.info("Consent recorded", consent_id=record.id, consent=value,
                    user_id=record.user_id, ip=record.ip)
        return record

    def record_anonymous_log_consent(self, consent: Any, ip: Optional[str] = None,
                                user_agent: Optional[str] = None,
                                metadata: Optional[Dict[str, Any]] = None,
                                headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Write a cookie-banner decision to the consent log without a database row"""
        value = validate_consent_value(consent)
        session_id = generate_session_id()
        entry = {
            "id": session_id,
            "timestamp": datetime.now(UTC).isoformat(),
            "consent": value,
            "ip": sanitize_ip(ip),
            "userAgent": sanitize_user_agent(user_agent),
            "headers": dict(headers or {}),
            "metadata": dict(metadata or {}),
            "version": self.settings.consent_version,
        }
        return self.audit_logger.log_consent(entry)

    async def get_consent_stats(self, filters: Optional[Mapping[str, Any]] = None) -> ConsentStats:
        """
        Aggregate consent counts inside an optional date/consent window

        Args:
            filters: start_date, end_date and consent, all optional

        Returns:
            Totals, acceptance rate and per-day breakdown

        Raises:
            InvalidConsentValueError: If the consent filter is not an allowed value
            PersistenceFailureError: If the database cannot be queried
        """
        filters = dict(filters or {})
        consent = validate_consent_value(filters.get("consent"), required=False)
        window = ConsentFilter(
            start_date=filters.get("start_date"),
            end_date=filters.get("end_date"),
            consent=ConsentValue(consent) if consent else None,
        )

        try:
            total = await asyncio.to_thread(self.repository.count_by_filter, window)
            accepted = await asyncio.to_thread(
                self.repository.count_by_filter, window.with_consent(ConsentValue.ACCEPTED)
            ) if window.consent in (None, ConsentValue.ACCEPTED) else 0
            declined = await asyncio.to_thread(
                self.repository.count_by_filter, window.with_consent(ConsentValue.DECLINED)
            ) if window.consent in (None, ConsentValue.DECLINED) else 0
            daily = await asyncio.to_thread(self.repository.group_by_day, window)
        except Exception as e:
            logger.error("Error getting consent statistics", error=str(e))
            raise PersistenceFailureError("get_consent_stats", str(e)) from e

        return ConsentStats(
            total=total,
            accepted=accepted,
            declined=declined,
            acceptance_rate=round(accepted / total * 100, 2) if total > 0 else 0,
            by_date={day: DailyConsentCounts(**counts) for day, counts in daily.items()},
        )

    async def get_user_consent_history(self, user_id: str) -> List[ConsentRecord]:
        """All of a user's consent records, newest first"""
        try:
            return await asyncio.to_thread(self.repository.find_by_user, str(user_id))
        except Exception as e:
            logger.error("Error getting user consent history", user_id=user_id, error=str(e))
            raise PersistenceFailureError("get_user_consent_history", str(e)) from e

    async def get_latest_user_consent(self, user_id: str) -> Optional[ConsentRecord]:
        """The user's newest consent record, None when there is none"""
        try:
            return await asyncio.to_thread(self.repository.latest_for_user, str(user_id))
        except Exception as e:
            logger.error("Error getting latest user consent", user_id=user_id, error=str(e))
            raise PersistenceFailureError("get_latest_user_consent", str(e)) from e

    async def has_valid_consent(self, user_id: str) -> bool:
        """True only when the latest decision is accepted and inside the retention window"""
        try:
            latest = await self.get_latest_user_consent(user_id)
        except PersistenceFailureError as e:
            logger.error("Error checking valid consent", user_id=user_id, error=str(e))
            return False

        if latest is None:
            return False

        max_age = timedelta(days=self.settings.retention_period_days).total_seconds()
        return latest.is_accepted() and latest.age_seconds() < max_age

    async def withdraw_consent(self, user_id: str, ip: Optional[str] = None,
                               user_agent: Optional[str] = None,
                               session_id: Optional[str] = None,
                               metadata: Optional[Dict[str, Any]] = None) -> ConsentRecord:
        """Record a declined decision on the user's behalf; earlier records are kept"""
        previous = None
        try:
            latest = await self.get_latest_user_consent(user_id)
            previous = latest.consent.value if latest else None
        except PersistenceFailureError as e:
            logger.warning("Previous consent unavailable for withdrawal", user_id=user_id, error=str(e))

        record = await self.record_consent(
            ConsentValue.DECLINED,
            ip=ip,
            user_agent=user_agent,
            metadata={
                **(metadata or {}),
                "withdrawalReason": "user_requested",
                "previousConsent": previous,
            },
            user_id=user_id,
            session_id=session_id,
        )

        await asyncio.to_thread(
            self._audit, AuditActions.CONSENT_WITHDRAWN, record.id, record.ip,
            record.user_id, {"previousConsent": previous},
        )
        logger.info("Consent withdrawn", user_id=user_id, consent_id=record.id)
        return record

    async def export_user_consent_data(self, user_id: str) -> ConsentExport:
        """Data-portability export of the user's live consent records"""
        records = await self.get_user_consent_history(user_id)
        export = ConsentExport(user_id=str(user_id), consent_records=records)

        await asyncio.to_thread(
            self._audit, AuditActions.DATA_EXPORTED, None, None, str(user_id),
            {"recordCount": len(records)},
        )
        return export

    async def cleanup_old_records(self) -> int:
        """Apply the configured retention policy; returns records removed from the live table"""
        if self.retention is None:
            raise RuntimeError("Consent service has no retention manager attached")
        removed = await self.retention.apply_retention_policy()
        logger.info("Cleaned up old consent records", count=removed)
        return removed

    async def check_health(self) -> ConsentRecord:
        """Write a probe record through the full recording path"""
        return await self.record_consent(
            ConsentValue.ACCEPTED,
            ip="127.0.0.1",
            user_agent=HEALTH_CHECK_AGENT,
            session_id=generate_health_check_session_id(),
            metadata={"test": True, "timestamp": datetime.now(UTC).isoformat()},
        )
