"""
SQLAlchemy-backed activity store.

Events live in an append-only `activity_logs` table indexed on the columns
queries filter by. Detail payloads are stored as a JSON text blob and decoded
back into the category's payload model on read. Timestamps are stored in UTC.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from core.domain.models import ActivityCategory, ActivityEvent, ActivityFilter, Severity

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


class ActivityLogRecord(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), index=True)
    severity: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[str] = mapped_column(Text)
    target_user_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    target_patient_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    target_appointment_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    target_medical_record_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


def _to_db(value: datetime, naive: bool) -> datetime:
    # SQLite drops tzinfo, so it stores and compares naive UTC
    value = value.astimezone(UTC)
    return value.replace(tzinfo=None) if naive else value


def _from_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def create_store_engine(url: str, echo: bool = False) -> Engine:
    """Engine for `url`; SQLite connections may be used from worker threads."""
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SqlActivityStore:
    """ActivityStore implementation over any SQLAlchemy-supported database."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.engine = create_store_engine(url, echo=echo)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._naive_times = self.engine.dialect.name == "sqlite"
        self.logger = logger.bind(component="sql_activity_store", dialect=self.engine.dialect.name)
        self.logger.info("activity_store_ready")

    def add(self, event: ActivityEvent) -> ActivityEvent:
        record = ActivityLogRecord(
            user_id=event.actor_user_id,
            activity_type=event.category.value,
            severity=event.severity.value,
            description=event.description,
            target_user_id=event.target_user_id,
            target_patient_id=event.target_patient_id,
            target_appointment_id=event.target_appointment_id,
            target_medical_record_id=event.target_medical_record_id,
            details=event.details_blob(),
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=_to_db(event.created_at, self._naive_times),
        )
        with self._sessions.begin() as session:
            session.add(record)
            session.flush()
            record_id = record.id
        return event.model_copy(update={"id": record_id})

    def query(self, filters: ActivityFilter, limit: int) -> list[ActivityEvent]:
        statement = select(ActivityLogRecord)
        if filters.actor_user_id is not None:
            statement = statement.where(ActivityLogRecord.user_id == filters.actor_user_id)
        if filters.category is not None:
            statement = statement.where(ActivityLogRecord.activity_type == filters.category.value)
        if filters.severity is not None:
            statement = statement.where(ActivityLogRecord.severity == filters.severity.value)
        if filters.start_time is not None:
            statement = statement.where(
                ActivityLogRecord.created_at >= _to_db(filters.start_time, self._naive_times)
            )
        if filters.end_time is not None:
            statement = statement.where(
                ActivityLogRecord.created_at <= _to_db(filters.end_time, self._naive_times)
            )
        statement = statement.order_by(
            ActivityLogRecord.created_at.desc(), ActivityLogRecord.id.desc()
        ).limit(limit)

        with Session(self.engine) as session:
            return [self._to_event(record) for record in session.scalars(statement)]

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_event(record: ActivityLogRecord) -> ActivityEvent:
        category = ActivityCategory(record.activity_type)
        return ActivityEvent(
            id=record.id,
            actor_user_id=record.user_id,
            category=category,
            severity=Severity(record.severity),
            description=record.description,
            target_user_id=record.target_user_id,
            target_patient_id=record.target_patient_id,
            target_appointment_id=record.target_appointment_id,
            target_medical_record_id=record.target_medical_record_id,
            details=ActivityEvent.decode_details(category, record.details),
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=_from_db(record.created_at),
        )
