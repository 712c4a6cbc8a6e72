"""
Consent data models for FarmWork Hub
Immutable consent decisions, archive copies and service result types
"""

from datetime import datetime, UTC
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..constants import UNKNOWN
from ..utils.ids import generate_consent_id, generate_session_id


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ConsentValue(str, Enum):
    """A user's decision about data processing"""
    ACCEPTED = "accepted"
    DECLINED = "declined"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsentRecord(CamelModel):
    """Single consent decision. Never mutated once created."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=generate_consent_id)
    consent: ConsentValue = Field(..., description="accepted or declined")
    timestamp: datetime = Field(default_factory=utc_now)

    ip: str = Field(default=UNKNOWN, description="Normalized client address")
    user_agent: str = Field(default=UNKNOWN)
    user_id: Optional[str] = Field(default=None, description="Owning user, None when anonymous")
    session_id: str = Field(default_factory=generate_session_id)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: str = Field(default="1.0", description="Consent policy version")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_accepted(self) -> bool:
        return self.consent == ConsentValue.ACCEPTED

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds elapsed since the decision was recorded"""
        now = now or utc_now()
        return (now - self.timestamp).total_seconds()

    def to_log_entry(self) -> Dict[str, Any]:
        """JSON-ready representation written to the consent log"""
        return self.model_dump(mode="json", by_alias=True)


class ConsentArchive(CamelModel):
    """Copy of an expired consent record moved out of the live table"""
    id: str = Field(default_factory=generate_consent_id)
    original_id: str
    consent: ConsentValue
    original_timestamp: datetime
    archived_at: datetime = Field(default_factory=utc_now)

    ip: str = UNKNOWN
    user_agent: str = UNKNOWN
    user_id: Optional[str] = None
    session_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: str = "1.0"

    @field_validator("original_timestamp", "archived_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_record(cls, record: ConsentRecord,
                    archived_at: Optional[datetime] = None) -> "ConsentArchive":
        return cls(
            original_id=record.id,
            consent=record.consent,
            original_timestamp=record.timestamp,
            archived_at=archived_at or utc_now(),
            ip=record.ip,
            user_agent=record.user_agent,
            user_id=record.user_id,
            session_id=record.session_id,
            metadata=dict(record.metadata),
            version=record.version,
        )


class ConsentFilter(BaseModel):
    """Window used by counting and grouping queries"""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    consent: Optional[ConsentValue] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def with_consent(self, consent: ConsentValue) -> "ConsentFilter":
        return self.model_copy(update={"consent": consent})

    def matches(self, record: ConsentRecord) -> bool:
        if self.start_date and record.timestamp < self.start_date:
            return False
        if self.end_date and record.timestamp > self.end_date:
            return False
        if self.consent and record.consent != self.consent:
            return False
        return True


class DailyConsentCounts(CamelModel):
    accepted: int = 0
    declined: int = 0


class ConsentStats(CamelModel):
    """Aggregate counts returned to administrators"""
    total: int
    accepted: int
    declined: int
    acceptance_rate: float
    by_date: Dict[str, DailyConsentCounts] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utc_now)


class ConsentExport(CamelModel):
    """Data-portability dump of a user's live consent records"""
    user_id: str
    export_date: datetime = Field(default_factory=utc_now)
    consent_records: List[ConsentRecord] = Field(default_factory=list)
