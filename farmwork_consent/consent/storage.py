"""
Consent storage adapters for FarmWork Hub
Repository interface over the relational consent store and its archive
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, UTC
from typing import Optional, List, Dict, Iterable
import json
import threading
import structlog
from sqlalchemy import create_engine, Column, String, DateTime, Text, delete, func, select, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import ConsentRecord, ConsentArchive, ConsentFilter, ConsentValue, ensure_utc

logger = structlog.get_logger(__name__)

Base = declarative_base()


def _to_db_time(value: datetime) -> datetime:
    """Store naive UTC so comparisons behave the same on every backend"""
    return ensure_utc(value).replace(tzinfo=None)


def _day_key(value: datetime) -> str:
    return ensure_utc(value).date().isoformat()


class ConsentRecordDB(Base):
    """SQLAlchemy model for live consent records"""
    __tablename__ = "consent_records"

    id = Column(String, primary_key=True)
    consent = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)

    ip = Column(String, nullable=False)
    user_agent = Column(Text, nullable=False)
    user_id = Column(String, index=True)
    session_id = Column(String, nullable=False)

    consent_metadata = Column(Text)  # JSON string
    version = Column(String, nullable=False)


class ConsentArchiveDB(Base):
    """SQLAlchemy model for archived consent records"""
    __tablename__ = "consent_archives"

    id = Column(String, primary_key=True)
    original_id = Column(String, nullable=False, unique=True)
    consent = Column(String, nullable=False)
    original_timestamp = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=False)

    ip = Column(String, nullable=False)
    user_agent = Column(Text, nullable=False)
    user_id = Column(String, index=True)
    session_id = Column(String, nullable=False)

    consent_metadata = Column(Text)
    version = Column(String, nullable=False)


class ConsentRepository(ABC):
    """Narrow storage interface used by the consent service and retention manager"""

    @abstractmethod
    def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        """Persist a new consent record"""

    @abstractmethod
    def get_consent(self, consent_id: str) -> Optional[ConsentRecord]:
        """Get a live record by ID"""

    @abstractmethod
    def find_by_user(self, user_id: str) -> List[ConsentRecord]:
        """All live records of a user, newest first"""

    @abstractmethod
    def latest_for_user(self, user_id: str) -> Optional[ConsentRecord]:
        """Newest live record of a user"""

    @abstractmethod
    def count_by_filter(self, consent_filter: ConsentFilter) -> int:
        """Count live records inside a filter window"""

    @abstractmethod
    def group_by_day(self, consent_filter: ConsentFilter) -> Dict[str, Dict[str, int]]:
        """Per UTC day accepted/declined counts, newest day first"""

    @abstractmethod
    def count_older_than(self, cutoff: datetime) -> int:
        """Count live records created before the cutoff"""

    @abstractmethod
    def find_older_than(self, cutoff: datetime, limit: int,
                        exclude_ids: Iterable[str] = ()) -> List[ConsentRecord]:
        """Oldest-first page of live records created before the cutoff"""

    @abstractmethod
    def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        """Delete at most `limit` live records created before the cutoff"""

    @abstractmethod
    def archive_consent(self, record: ConsentRecord,
                        archived_at: Optional[datetime] = None) -> bool:
        """Copy a record into the archive and delete it from the live table.

        Keyed by original ID: returns False when an archive row already
        existed, in which case only the live row is removed.
        """

    @abstractmethod
    def get_archive(self, original_id: str) -> Optional[ConsentArchive]:
        """Get an archive row by the ID of the record it was copied from"""

    @abstractmethod
    def count_archived(self) -> int:
        """Count archive rows"""

    @abstractmethod
    def ping(self) -> bool:
        """Probe the database"""

    def close(self) -> None:
        """Release connections"""


class SQLConsentRepository(ConsentRepository):
    """SQLAlchemy-backed consent repository"""

    def __init__(self, database_url: Optional[str] = None):
        # Default to SQLite for development
        self.database_url = database_url or "sqlite:///consent.db"
        if self.database_url in ("sqlite://", "sqlite:///:memory:"):
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif self.database_url.startswith("sqlite"):
            self.engine = create_engine(self.database_url, connect_args={"check_same_thread": False})
        else:
            self.engine = create_engine(self.database_url)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)
        logger.info("Consent storage initialised", database_url=self.database_url)

    def _to_db_model(self, record: ConsentRecord) -> ConsentRecordDB:
        """Convert ConsentRecord to database model"""
        return ConsentRecordDB(
            id=record.id,
            consent=record.consent.value,
            timestamp=_to_db_time(record.timestamp),
            ip=record.ip,
            user_agent=record.user_agent,
            user_id=record.user_id,
            session_id=record.session_id,
            consent_metadata=json.dumps(record.metadata, default=str) if record.metadata else None,
            version=record.version,
        )

    def _load_metadata(self, raw: Optional[str], row_id: str) -> dict:
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid metadata JSON", consent_id=row_id)
            return {}

    def _from_db_model(self, row: ConsentRecordDB) -> ConsentRecord:
        """Convert database model to ConsentRecord"""
        return ConsentRecord(
            id=row.id,
            consent=ConsentValue(row.consent),
            timestamp=row.timestamp,
            ip=row.ip,
            user_agent=row.user_agent,
            user_id=row.user_id,
            session_id=row.session_id,
            metadata=self._load_metadata(row.consent_metadata, row.id),
            version=row.version,
        )

    def _from_archive_model(self, row: ConsentArchiveDB) -> ConsentArchive:
        return ConsentArchive(
            id=row.id,
            original_id=row.original_id,
            consent=ConsentValue(row.consent),
            original_timestamp=row.original_timestamp,
            archived_at=row.archived_at,
            ip=row.ip,
            user_agent=row.user_agent,
            user_id=row.user_id,
            session_id=row.session_id,
            metadata=self._load_metadata(row.consent_metadata, row.id),
            version=row.version,
        )

    def _apply_filter(self, stmt, consent_filter: ConsentFilter):
        if consent_filter.start_date:
            stmt = stmt.where(ConsentRecordDB.timestamp >= _to_db_time(consent_filter.start_date))
        if consent_filter.end_date:
            stmt = stmt.where(ConsentRecordDB.timestamp <= _to_db_time(consent_filter.end_date))
        if consent_filter.consent:
            stmt = stmt.where(ConsentRecordDB.consent == consent_filter.consent.value)
        return stmt

    def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        with self.SessionLocal() as session:
            session.add(self._to_db_model(record))
            session.commit()

        logger.info("Stored consent record", consent_id=record.id,
                    user_id=record.user_id, consent=record.consent.value)
        return record

    def get_consent(self, consent_id: str) -> Optional[ConsentRecord]:
        with self.SessionLocal() as session:
            row = session.get(ConsentRecordDB, consent_id)
            return self._from_db_model(row) if row else None

    def find_by_user(self, user_id: str) -> List[ConsentRecord]:
        with self.SessionLocal() as session:
            rows = session.scalars(
                select(ConsentRecordDB)
                .where(ConsentRecordDB.user_id == user_id)
                .order_by(ConsentRecordDB.timestamp.desc())
            ).all()
            return [self._from_db_model(row) for row in rows]

    def latest_for_user(self, user_id: str) -> Optional[ConsentRecord]:
        with self.SessionLocal() as session:
            row = session.scalars(
                select(ConsentRecordDB)
                .where(ConsentRecordDB.user_id == user_id)
                .order_by(ConsentRecordDB.timestamp.desc())
                .limit(1)
            ).first()
            return self._from_db_model(row) if row else None

    def count_by_filter(self, consent_filter: ConsentFilter) -> int:
        with self.SessionLocal() as session:
            stmt = self._apply_filter(select(func.count(ConsentRecordDB.id)), consent_filter)
            return session.scalar(stmt) or 0

    def group_by_day(self, consent_filter: ConsentFilter) -> Dict[str, Dict[str, int]]:
        daily: Dict[str, Dict[str, int]] = OrderedDict()
        with self.SessionLocal() as session:
            stmt = self._apply_filter(
                select(ConsentRecordDB.consent, ConsentRecordDB.timestamp),
                consent_filter,
            ).order_by(ConsentRecordDB.timestamp.desc())
            for consent, timestamp in session.execute(stmt):
                bucket = daily.setdefault(_day_key(timestamp), {"accepted": 0, "declined": 0})
                bucket[consent] += 1
        return daily

    def count_older_than(self, cutoff: datetime) -> int:
        with self.SessionLocal() as session:
            return session.scalar(
                select(func.count(ConsentRecordDB.id))
                .where(ConsentRecordDB.timestamp < _to_db_time(cutoff))
            ) or 0

    def find_older_than(self, cutoff: datetime, limit: int,
                        exclude_ids: Iterable[str] = ()) -> List[ConsentRecord]:
        exclude_ids = list(exclude_ids)
        with self.SessionLocal() as session:
            stmt = (
                select(ConsentRecordDB)
                .where(ConsentRecordDB.timestamp < _to_db_time(cutoff))
                .order_by(ConsentRecordDB.timestamp.asc())
                .limit(limit)
            )
            if exclude_ids:
                stmt = stmt.where(ConsentRecordDB.id.not_in(exclude_ids))
            return [self._from_db_model(row) for row in session.scalars(stmt).all()]

    def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        with self.SessionLocal() as session:
            ids = session.scalars(
                select(ConsentRecordDB.id)
                .where(ConsentRecordDB.timestamp < _to_db_time(cutoff))
                .order_by(ConsentRecordDB.timestamp.asc())
                .limit(limit)
            ).all()
            if not ids:
                return 0
            result = session.execute(
                delete(ConsentRecordDB).where(ConsentRecordDB.id.in_(ids))
            )
            session.commit()
            return result.rowcount

    def archive_consent(self, record: ConsentRecord,
                        archived_at: Optional[datetime] = None) -> bool:
        archive = ConsentArchive.from_record(record, archived_at)
        with self.SessionLocal() as session:
            with session.begin():
                existing = session.scalars(
                    select(ConsentArchiveDB).where(ConsentArchiveDB.original_id == record.id)
                ).first()
                created = existing is None
                if created:
                    session.add(ConsentArchiveDB(
                        id=archive.id,
                        original_id=archive.original_id,
                        consent=archive.consent.value,
                        original_timestamp=_to_db_time(archive.original_timestamp),
                        archived_at=_to_db_time(archive.archived_at),
                        ip=archive.ip,
                        user_agent=archive.user_agent,
                        user_id=archive.user_id,
                        session_id=archive.session_id,
                        consent_metadata=json.dumps(archive.metadata, default=str) if archive.metadata else None,
                        version=archive.version,
                    ))
                    # Archive row must exist before the live row goes away
                    session.flush()
                session.execute(delete(ConsentRecordDB).where(ConsentRecordDB.id == record.id))

        logger.debug("Archived consent record", consent_id=record.id, created=created)
        return created

    def get_archive(self, original_id: str) -> Optional[ConsentArchive]:
        with self.SessionLocal() as session:
            row = session.scalars(
                select(ConsentArchiveDB).where(ConsentArchiveDB.original_id == original_id)
            ).first()
            return self._from_archive_model(row) if row else None

    def count_archived(self) -> int:
        with self.SessionLocal() as session:
            return session.scalar(select(func.count(ConsentArchiveDB.id))) or 0

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database probe failed", error=str(e))
            return False

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Consent storage closed")


class InMemoryConsentRepository(ConsentRepository):
    """In-memory repository for testing"""

    def __init__(self):
        self.records: Dict[str, ConsentRecord] = {}
        self.archives: Dict[str, ConsentArchive] = {}
        self._lock = threading.Lock()

    def _newest_first(self, records: Iterable[ConsentRecord]) -> List[ConsentRecord]:
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def insert_consent(self, record: ConsentRecord) -> ConsentRecord:
        with self._lock:
            self.records[record.id] = record
        return record

    def get_consent(self, consent_id: str) -> Optional[ConsentRecord]:
        return self.records.get(consent_id)

    def find_by_user(self, user_id: str) -> List[ConsentRecord]:
        with self._lock:
            return self._newest_first(r for r in self.records.values() if r.user_id == user_id)

    def latest_for_user(self, user_id: str) -> Optional[ConsentRecord]:
        history = self.find_by_user(user_id)
        return history[0] if history else None

    def count_by_filter(self, consent_filter: ConsentFilter) -> int:
        with self._lock:
            return sum(1 for r in self.records.values() if consent_filter.matches(r))

    def group_by_day(self, consent_filter: ConsentFilter) -> Dict[str, Dict[str, int]]:
        daily: Dict[str, Dict[str, int]] = OrderedDict()
        with self._lock:
            matching = self._newest_first(r for r in self.records.values() if consent_filter.matches(r))
        for record in matching:
            bucket = daily.setdefault(_day_key(record.timestamp), {"accepted": 0, "declined": 0})
            bucket[record.consent.value] += 1
        return daily

    def count_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            return sum(1 for r in self.records.values() if r.timestamp < cutoff)

    def find_older_than(self, cutoff: datetime, limit: int,
                        exclude_ids: Iterable[str] = ()) -> List[ConsentRecord]:
        excluded = set(exclude_ids)
        with self._lock:
            expired = [
                r for r in self.records.values()
                if r.timestamp < cutoff and r.id not in excluded
            ]
        expired.sort(key=lambda r: r.timestamp)
        return expired[:limit]

    def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        with self._lock:
            expired = sorted(
                (r for r in self.records.values() if r.timestamp < cutoff),
                key=lambda r: r.timestamp,
            )[:limit]
            for record in expired:
                del self.records[record.id]
        return len(expired)

    def archive_consent(self, record: ConsentRecord,
                        archived_at: Optional[datetime] = None) -> bool:
        with self._lock:
            created = record.id not in self.archives
            if created:
                self.archives[record.id] = ConsentArchive.from_record(record, archived_at)
            self.records.pop(record.id, None)
        return created

    def get_archive(self, original_id: str) -> Optional[ConsentArchive]:
        return self.archives.get(original_id)

    def count_archived(self) -> int:
        return len(self.archives)

    def ping(self) -> bool:
        return True
