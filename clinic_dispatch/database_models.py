"""SQLAlchemy database models for the dispatch store."""
from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Partial-index predicates (supported by SQLite and PostgreSQL)
LIVE_SLOT_PREDICATE = text("status != 'cancelled' AND scheduled_time IS NOT NULL")
IN_PROGRESS_PREDICATE = text("status = 'in_progress'")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp normalized to UTC.

    SQLite keeps no offset, so values are written as UTC wall time and
    tagged with UTC again on the way out. PostgreSQL stores timestamptz.
    Naive values are taken to be UTC already.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DoctorRecord(Base):
    """Doctor profile and weekly availability."""
    __tablename__ = "doctors"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    user_id = Column(String(64), nullable=True, index=True)
    specialization = Column(String(200), nullable=True)
    consultation_fee = Column(Float, nullable=True)
    working_days = Column(JSON, nullable=False, default=list)  # ["monday", ...]
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration = Column(Integer, nullable=False)
    accepting_patients = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<DoctorRecord(id={self.id}, accepting={self.accepting_patients})>"


class PatientRecord(Base):
    __tablename__ = "patients"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False, index=True)
    phone = Column(String(40), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)

    def __repr__(self):
        return f"<PatientRecord(id={self.id})>"


class QueueEntryRecord(Base):
    """
    Appointment / walk-in row.

    Constraints back up the in-process locking:
    - queue numbers unique per doctor-day
    - one live entry per scheduled slot
    - one in-progress entry per doctor-day
    """
    __tablename__ = "queue_entries"
    __table_args__ = (
        UniqueConstraint(
            "doctor_id", "appointment_date", "queue_number",
            name="uq_queue_number_per_doctor_day",
        ),
        Index(
            "uq_live_slot_per_doctor_day",
            "doctor_id", "appointment_date", "scheduled_time",
            unique=True,
            sqlite_where=LIVE_SLOT_PREDICATE,
            postgresql_where=LIVE_SLOT_PREDICATE,
        ),
        Index(
            "uq_in_progress_per_doctor_day",
            "doctor_id", "appointment_date",
            unique=True,
            sqlite_where=IN_PROGRESS_PREDICATE,
            postgresql_where=IN_PROGRESS_PREDICATE,
        ),
    )

    id = Column(String(64), primary_key=True)
    doctor_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    appointment_date = Column(Date, nullable=False, index=True)
    scheduled_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    queue_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False)
    symptoms = Column(Text, nullable=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_amount = Column(Float, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    called_by = Column(String(64), nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return (
            f"<QueueEntryRecord(id={self.id}, doctor={self.doctor_id}, "
            f"number={self.queue_number}, status={self.status})>"
        )
