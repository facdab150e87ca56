"""Persistence for doctors, patients and queue entries.

Thin wrapper around SQLAlchemy. Every public method opens its own session
and commits once, so each state change lands as a single atomic write.
Constraint violations surface as ConcurrencyConflict: the only way to hit
one is a concurrent writer racing the same doctor-day.
"""
from datetime import date, datetime
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_dispatch.database_models import (
    Base,
    DoctorRecord,
    PatientRecord,
    QueueEntryRecord,
)
from clinic_dispatch.errors import ConcurrencyConflict, NotFound
from clinic_dispatch.logging_config import get_logger
from clinic_dispatch.models import (
    AppointmentStatus,
    Doctor,
    DoctorAvailability,
    EntryKind,
    Patient,
    PaymentStatus,
    PriorityClass,
    QueueEntry,
)

logger = get_logger(__name__)

IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _engine_options(database_url: str) -> dict:
    if database_url in IN_MEMORY_URLS:
        # One shared connection so every thread sees the same database
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


def _availability_from_record(record: DoctorRecord) -> DoctorAvailability:
    return DoctorAvailability(
        doctor_id=record.id,
        working_days=tuple(record.working_days or ()),
        start_time=record.start_time,
        end_time=record.end_time,
        slot_duration=record.slot_duration,
        accepting_patients=record.accepting_patients,
    )


def _doctor_from_record(record: DoctorRecord) -> Doctor:
    return Doctor(
        id=record.id,
        name=record.name,
        availability=_availability_from_record(record),
        user_id=record.user_id,
        specialization=record.specialization,
        consultation_fee=record.consultation_fee,
    )


def _patient_from_record(record: PatientRecord) -> Patient:
    return Patient(id=record.id, name=record.name, phone=record.phone, user_id=record.user_id)


def _localize(value: Optional[datetime], zone: ZoneInfo) -> Optional[datetime]:
    return value.astimezone(zone) if value is not None else None


def _entry_from_record(record: QueueEntryRecord, zone: ZoneInfo) -> QueueEntry:
    return QueueEntry(
        id=record.id,
        doctor_id=record.doctor_id,
        patient_id=record.patient_id,
        date=record.appointment_date,
        queue_number=record.queue_number,
        status=AppointmentStatus(record.status),
        kind=EntryKind(record.kind),
        priority=PriorityClass(record.priority),
        scheduled_time=record.scheduled_time,
        end_time=record.end_time,
        symptoms=record.symptoms,
        payment_status=PaymentStatus(record.payment_status),
        payment_amount=record.payment_amount,
        created_at=_localize(record.created_at, zone),
        updated_at=_localize(record.updated_at, zone),
        cancellation_reason=record.cancellation_reason,
        cancelled_by=record.cancelled_by,
        called_by=record.called_by,
        started_at=_localize(record.started_at, zone),
        completed_at=_localize(record.completed_at, zone),
    )


def _entry_values(entry: QueueEntry) -> dict:
    return {
        "doctor_id": entry.doctor_id,
        "patient_id": entry.patient_id,
        "appointment_date": entry.date,
        "scheduled_time": entry.scheduled_time,
        "end_time": entry.end_time,
        "queue_number": entry.queue_number,
        "status": entry.status.value,
        "kind": entry.kind.value,
        "priority": entry.priority.value,
        "symptoms": entry.symptoms,
        "payment_status": entry.payment_status.value,
        "payment_amount": entry.payment_amount,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "cancellation_reason": entry.cancellation_reason,
        "cancelled_by": entry.cancelled_by,
        "called_by": entry.called_by,
        "started_at": entry.started_at,
        "completed_at": entry.completed_at,
    }


class QueueStore:
    """
    SQLAlchemy-backed store.

    Responsibilities:
    - Doctor profiles and availability
    - Patient lookup and search
    - Queue entries: insert, conditional update, per doctor-day queries

    Pattern: Thin wrapper around SQLAlchemy for persistence.
    """

    def __init__(self, database_url: str, timezone_name: str = "UTC"):
        """
        Initialize store with database connection.

        Args:
            database_url: SQLAlchemy connection string
            timezone_name: Zone that stored timestamps are returned in
        """
        self.zone = ZoneInfo(timezone_name)
        self.engine = create_engine(database_url, **_engine_options(database_url))
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def close(self) -> None:
        self.engine.dispose()

    # Doctors

    def add_doctor(self, doctor: Doctor) -> Doctor:
        availability = doctor.availability
        with self.SessionLocal() as db:
            db.add(DoctorRecord(
                id=doctor.id,
                name=doctor.name,
                user_id=doctor.user_id,
                specialization=doctor.specialization,
                consultation_fee=doctor.consultation_fee,
                working_days=list(availability.working_days),
                start_time=availability.start_time,
                end_time=availability.end_time,
                slot_duration=availability.slot_duration,
                accepting_patients=availability.accepting_patients,
            ))
            db.commit()
        return doctor

    def get_doctor(self, doctor_id: str) -> Doctor:
        """
        Raises:
            NotFound: If doctor_id does not exist
        """
        with self.SessionLocal() as db:
            record = db.get(DoctorRecord, doctor_id)
            if record is None:
                raise NotFound(f"Doctor {doctor_id} not found")
            return _doctor_from_record(record)

    def list_doctors(self) -> List[Doctor]:
        with self.SessionLocal() as db:
            records = db.scalars(select(DoctorRecord).order_by(DoctorRecord.name)).all()
            return [_doctor_from_record(r) for r in records]

    def find_doctor_ids_for_user(self, user_id: str) -> List[str]:
        """Doctor profiles owned by a user account."""
        stmt = select(DoctorRecord.id).where(DoctorRecord.user_id == user_id)
        with self.SessionLocal() as db:
            return list(db.scalars(stmt).all())

    def save_availability(self, availability: DoctorAvailability) -> DoctorAvailability:
        with self.SessionLocal() as db:
            record = db.get(DoctorRecord, availability.doctor_id)
            if record is None:
                raise NotFound(f"Doctor {availability.doctor_id} not found")
            record.working_days = list(availability.working_days)
            record.start_time = availability.start_time
            record.end_time = availability.end_time
            record.slot_duration = availability.slot_duration
            record.accepting_patients = availability.accepting_patients
            db.commit()
        return availability

    # Patients

    def add_patient(self, patient: Patient) -> Patient:
        with self.SessionLocal() as db:
            db.add(PatientRecord(
                id=patient.id,
                name=patient.name,
                phone=patient.phone,
                user_id=patient.user_id,
            ))
            db.commit()
        return patient

    def get_patient(self, patient_id: str) -> Patient:
        """
        Raises:
            NotFound: If patient_id does not exist
        """
        with self.SessionLocal() as db:
            record = db.get(PatientRecord, patient_id)
            if record is None:
                raise NotFound(f"Patient {patient_id} not found")
            return _patient_from_record(record)

    def search_patients(self, term: str, limit: int = 20) -> List[Patient]:
        """Case-insensitive match on name or phone."""
        pattern = f"%{term.strip().lower()}%"
        with self.SessionLocal() as db:
            records = db.scalars(
                select(PatientRecord)
                .where(or_(
                    func.lower(PatientRecord.name).like(pattern),
                    PatientRecord.phone.like(pattern),
                ))
                .order_by(PatientRecord.name)
                .limit(limit)
            ).all()
            return [_patient_from_record(r) for r in records]

    # Queue entries

    def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        """
        Persist a new entry.

        Raises:
            ConcurrencyConflict: If another writer took the same queue
                number or slot first
        """
        with self.SessionLocal() as db:
            db.add(QueueEntryRecord(id=entry.id, **_entry_values(entry)))
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.warning(
                    "queue_entry_insert_conflict",
                    doctor_id=entry.doctor_id,
                    date=entry.date.isoformat(),
                    queue_number=entry.queue_number,
                )
                raise ConcurrencyConflict(
                    f"Queue number {entry.queue_number} or slot already taken "
                    f"for doctor {entry.doctor_id} on {entry.date.isoformat()}"
                ) from e
        return entry

    def get_entry(self, entry_id: str) -> QueueEntry:
        """
        Raises:
            NotFound: If entry_id does not exist
        """
        with self.SessionLocal() as db:
            record = db.get(QueueEntryRecord, entry_id)
            if record is None:
                raise NotFound(f"Appointment {entry_id} not found")
            return _entry_from_record(record, self.zone)

    def update_entry(self, entry: QueueEntry, expected_status: AppointmentStatus) -> QueueEntry:
        """
        Write ``entry`` only if the stored row still has ``expected_status``.

        Pattern: optimistic read-then-conditionally-write.

        Raises:
            ConcurrencyConflict: If the row changed since it was read, or the
                write would break a uniqueness constraint
        """
        stmt = (
            update(QueueEntryRecord)
            .where(
                QueueEntryRecord.id == entry.id,
                QueueEntryRecord.status == AppointmentStatus(expected_status).value,
            )
            .values(**_entry_values(entry))
            .execution_options(synchronize_session=False)
        )
        with self.SessionLocal() as db:
            try:
                updated = db.execute(stmt).rowcount
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConcurrencyConflict(
                    f"Appointment {entry.id} conflicts with a concurrent update"
                ) from e

        if updated == 0:
            raise ConcurrencyConflict(
                f"Appointment {entry.id} is no longer '{AppointmentStatus(expected_status).value}'"
            )
        return entry

    def find_entries(
        self,
        doctor_id: str,
        target_date: date,
        statuses: Optional[Iterable[AppointmentStatus]] = None
    ) -> List[QueueEntry]:
        """Entries of one doctor-day ordered by queue number."""
        stmt = select(QueueEntryRecord).where(
            QueueEntryRecord.doctor_id == doctor_id,
            QueueEntryRecord.appointment_date == target_date,
        )
        if statuses is not None:
            stmt = stmt.where(QueueEntryRecord.status.in_([s.value for s in statuses]))
        with self.SessionLocal() as db:
            records = db.scalars(stmt.order_by(QueueEntryRecord.queue_number)).all()
            return [_entry_from_record(r, self.zone) for r in records]

    def find_entries_by_date(self, target_date: date) -> List[QueueEntry]:
        """All entries of a date, grouped by doctor then queue number."""
        stmt = (
            select(QueueEntryRecord)
            .where(QueueEntryRecord.appointment_date == target_date)
            .order_by(QueueEntryRecord.doctor_id, QueueEntryRecord.queue_number)
        )
        with self.SessionLocal() as db:
            return [_entry_from_record(r, self.zone) for r in db.scalars(stmt).all()]

    def max_queue_number(self, doctor_id: str, target_date: date) -> int:
        """Highest queue number issued for the doctor-day (0 if none)."""
        stmt = select(func.max(QueueEntryRecord.queue_number)).where(
            QueueEntryRecord.doctor_id == doctor_id,
            QueueEntryRecord.appointment_date == target_date,
        )
        with self.SessionLocal() as db:
            return db.scalar(stmt) or 0

    def list_entries(
        self,
        status: Optional[AppointmentStatus] = None,
        doctor_ids: Optional[Iterable[str]] = None,
        target_date: Optional[date] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[QueueEntry]:
        """
        Entries matching every given filter, across doctors and dates.

        Ordered newest date first, then by scheduled time with walk-ins
        after booked slots, then by queue number.
        """
        stmt = select(QueueEntryRecord)
        if status is not None:
            stmt = stmt.where(QueueEntryRecord.status == AppointmentStatus(status).value)
        if doctor_ids is not None:
            stmt = stmt.where(QueueEntryRecord.doctor_id.in_(list(doctor_ids)))
        if target_date is not None:
            stmt = stmt.where(QueueEntryRecord.appointment_date == target_date)
        stmt = (
            stmt.order_by(
                QueueEntryRecord.appointment_date.desc(),
                QueueEntryRecord.scheduled_time.asc().nulls_last(),
                QueueEntryRecord.queue_number,
            )
            .limit(limit)
            .offset(offset)
        )
        with self.SessionLocal() as db:
            return [_entry_from_record(r, self.zone) for r in db.scalars(stmt).all()]
