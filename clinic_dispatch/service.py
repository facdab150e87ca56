"""Dispatch facade: the operations exposed to the HTTP boundary.

Each operation:
1. validates input shape
2. runs the pure components (allocator, sequencer, state machine)
3. persists the change as one atomic write
4. publishes the change to the notifier

A failure in (2) or (3) raises before (4), so subscribers only ever hear
about committed changes.
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, Iterable, List, Optional

from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from clinic_dispatch import config
from clinic_dispatch.allocator import SlotAllocator, occupied_times
from clinic_dispatch.availability import AvailabilityResolver, AvailabilityView, TimeFilter, TimeOfDay
from clinic_dispatch.clock import WEEKDAY_NAMES, Clock, SystemClock, parse_date, parse_time
from clinic_dispatch.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    QueueEmpty,
    ValidationError,
)
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
from clinic_dispatch.notifier import EventAction, Notifier, QueueEvent, create_notifier
from clinic_dispatch.sequencer import QueueSequencer
from clinic_dispatch.state_machine import initial_status, transition
from clinic_dispatch.store import QueueStore
from clinic_dispatch.triage import (
    KeywordPriorityClassifier,
    PriorityClassifier,
    parse_priority,
    resolve_priority,
)

logger = get_logger(__name__)
retry_logger = logging.getLogger(__name__)


@dataclass
class DoctorQueue:
    """Snapshot of one doctor's queue for a date."""
    doctor_id: str
    date: date
    current: Optional[QueueEntry]
    waiting: List[QueueEntry] = field(default_factory=list)
    entries: List[QueueEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date.isoformat(),
            "current": self.current.to_dict() if self.current else None,
            "waiting": [e.to_dict() for e in self.waiting],
            "entries": [e.to_dict() for e in self.entries],
            "waiting_count": len(self.waiting),
        }


def _require_id(value, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"A valid {label} is required")
    return value.strip()


def _new_id() -> str:
    return str(uuid.uuid4())


class DispatchService:
    """
    Orchestrates booking, walk-ins and dispatch for all doctors.

    Safe to share across request threads: numbering and dispatch for a
    doctor-day run under the sequencer's per-key lock, and every write is
    conditional on the state that was read.
    """

    def __init__(
        self,
        store: QueueStore,
        notifier: Notifier,
        clock: Optional[Clock] = None,
        classifier: Optional[PriorityClassifier] = None,
        resolver: Optional[AvailabilityResolver] = None,
        sequencer: Optional[QueueSequencer] = None
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.classifier = classifier or KeywordPriorityClassifier()
        self.resolver = resolver or AvailabilityResolver()
        self.allocator = SlotAllocator(self.resolver)
        self.sequencer = sequencer or QueueSequencer()
        self.time_filter = TimeFilter()

    # Registration

    def register_doctor(
        self,
        name: str,
        doctor_id: Optional[str] = None,
        user_id: Optional[str] = None,
        specialization: Optional[str] = None,
        consultation_fee: Optional[float] = None,
        working_days: Optional[Iterable[str]] = None,
        start_time=None,
        end_time=None,
        slot_duration: Optional[int] = None,
        accepting_patients: bool = True
    ) -> Doctor:
        """Create a doctor; unset schedule fields fall back to DEFAULT_AVAILABILITY."""
        defaults = config.DEFAULT_AVAILABILITY
        doctor_id = doctor_id or _new_id()
        availability = self._build_availability(
            doctor_id,
            working_days if working_days is not None else defaults["days"],
            start_time or defaults["start_time"],
            end_time or defaults["end_time"],
            slot_duration if slot_duration is not None else defaults["slot_duration_minutes"],
            accepting_patients,
        )
        doctor = Doctor(
            id=doctor_id,
            name=_require_id(name, "doctor name"),
            availability=availability,
            user_id=user_id,
            specialization=specialization,
            consultation_fee=consultation_fee,
        )
        self.store.add_doctor(doctor)
        logger.info("doctor_registered", doctor_id=doctor.id)
        return doctor

    def register_patient(
        self,
        name: str,
        patient_id: Optional[str] = None,
        phone: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Patient:
        patient = Patient(
            id=patient_id or _new_id(),
            name=_require_id(name, "patient name"),
            phone=phone,
            user_id=user_id,
        )
        return self.store.add_patient(patient)

    # Entry creation

    def book_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        appointment_date,
        appointment_time,
        symptoms: Optional[str] = None,
        priority=None,
        actor: Optional[str] = None
    ) -> QueueEntry:
        """
        Book a timed slot. The entry starts as ``pending`` until check-in.

        Raises:
            ValidationError: Malformed ids/date/time, past date, off-grid time
            NotFound: Unknown doctor or patient
            DoctorUnavailable: Doctor not working that day / not accepting
            SlotConflict: Slot already booked
            ConcurrencyConflict: Lost a numbering race twice in a row
        """
        doctor_id = _require_id(doctor_id, "doctor ID")
        patient_id = _require_id(patient_id, "patient ID")
        target_date = parse_date(appointment_date)
        requested = parse_time(appointment_time)
        explicit = parse_priority(priority)

        doctor = self.store.get_doctor(doctor_id)
        patient = self.store.get_patient(patient_id)

        entry = self._create_entry(
            doctor, patient, target_date, EntryKind.BOOKED, explicit, symptoms, requested
        )
        logger.info(
            "appointment_booked",
            entry_id=entry.id,
            doctor_id=doctor.id,
            date=entry.date.isoformat(),
            time=requested.strftime("%H:%M"),
            queue_number=entry.queue_number,
            actor=actor,
        )
        self._publish(EventAction.BOOKED, entry, doctor, patient)
        return entry

    def add_walk_in(
        self,
        doctor_id: str,
        patient_id: str,
        symptoms: Optional[str] = None,
        priority=None,
        actor: Optional[str] = None
    ) -> QueueEntry:
        """
        Add a walk-in to today's queue, directly as ``confirmed``.

        Raises:
            ValidationError: Malformed ids or priority flag
            NotFound: Unknown doctor or patient
            DoctorUnavailable: Doctor not accepting patients
            ConcurrencyConflict: Lost a numbering race twice in a row
        """
        doctor_id = _require_id(doctor_id, "doctor ID")
        patient_id = _require_id(patient_id, "patient ID")
        explicit = parse_priority(priority)

        doctor = self.store.get_doctor(doctor_id)
        patient = self.store.get_patient(patient_id)

        entry = self._create_entry(
            doctor, patient, self.clock.today(), EntryKind.WALK_IN, explicit, symptoms
        )
        logger.info(
            "walk_in_added",
            entry_id=entry.id,
            doctor_id=doctor.id,
            queue_number=entry.queue_number,
            priority=entry.priority.value,
            actor=actor,
        )
        self._publish(EventAction.ADDED, entry, doctor, patient)
        return entry

    @retry(
        stop=stop_after_attempt(config.QUEUE_NUMBER_ATTEMPTS),
        retry=retry_if_exception_type(ConcurrencyConflict),
        before_sleep=before_sleep_log(retry_logger, logging.WARNING),
        reraise=True
    )
    def _create_entry(
        self,
        doctor: Doctor,
        patient: Patient,
        target_date: date,
        kind: EntryKind,
        explicit_priority: Optional[PriorityClass],
        symptoms: Optional[str],
        requested_time=None
    ) -> QueueEntry:
        # Validate, number and insert as one unit per doctor-day
        with self.sequencer.lock_for(doctor.id, target_date):
            scheduled_time = end_time = None
            if kind == EntryKind.BOOKED:
                existing = self.store.find_entries(doctor.id, target_date)
                reservation = self.allocator.reserve(
                    doctor.availability,
                    target_date,
                    requested_time,
                    existing,
                    today=self.clock.today(),
                )
                scheduled_time, end_time = reservation.start_time, reservation.end_time
            else:
                self.allocator.check_walk_in(doctor.availability)

            queue_number = self.sequencer.next_queue_number(
                self.store.max_queue_number(doctor.id, target_date)
            )
            now = self.clock.now()
            entry = QueueEntry(
                id=_new_id(),
                doctor_id=doctor.id,
                patient_id=patient.id,
                date=target_date,
                queue_number=queue_number,
                status=initial_status(kind),
                kind=kind,
                priority=resolve_priority(explicit_priority, symptoms, queue_number, self.classifier),
                scheduled_time=scheduled_time,
                end_time=end_time,
                symptoms=symptoms,
                payment_status=PaymentStatus.PENDING,
                payment_amount=doctor.consultation_fee,
                created_at=now,
                updated_at=now,
            )
            return self.store.insert_entry(entry)

    # Dispatch

    def call_next(self, doctor_id: str, actor: Optional[str] = None, strict: bool = False) -> QueueEntry:
        """
        Promote the highest-ranked confirmed entry of today to ``in_progress``.

        If the doctor already has a patient in progress, that entry is
        returned unchanged (or InvalidTransition is raised when ``strict``).

        Raises:
            NotFound: Unknown doctor
            QueueEmpty: Nobody is waiting
            InvalidTransition: strict=True and a patient is already in progress
            ConcurrencyConflict: The selected entry changed underneath us
        """
        doctor_id = _require_id(doctor_id, "doctor ID")
        doctor = self.store.get_doctor(doctor_id)
        today = self.clock.today()

        with self.sequencer.lock_for(doctor_id, today):
            entries = self.store.find_entries(doctor_id, today)
            current = self.sequencer.current(entries)
            if current is not None:
                if strict:
                    raise InvalidTransition(
                        f"Doctor {doctor_id} already has token {current.token} in progress; "
                        "complete or cancel it first",
                        current=current.status.value,
                        target=AppointmentStatus.IN_PROGRESS.value,
                    )
                logger.info("call_next_patient_already_in_progress", doctor_id=doctor_id, entry_id=current.id)
                return current

            selected = self.sequencer.select_next(entries)
            if selected is None:
                raise QueueEmpty(f"No patients waiting for doctor {doctor_id}")

            promoted = transition(selected, AppointmentStatus.IN_PROGRESS, self.clock.now(), actor=actor)
            self.store.update_entry(promoted, expected_status=AppointmentStatus.CONFIRMED)

        logger.info(
            "patient_called",
            doctor_id=doctor_id,
            entry_id=promoted.id,
            token=promoted.token,
            priority=promoted.priority.value,
            actor=actor,
        )
        self._publish(EventAction.NEXT_CALLED, promoted, doctor)
        return promoted

    def complete_current(self, doctor_id: str, actor: Optional[str] = None) -> QueueEntry:
        """
        Mark the doctor's in-progress patient as completed.

        Raises:
            NotFound: Unknown doctor, or no patient in progress today
        """
        doctor_id = _require_id(doctor_id, "doctor ID")
        doctor = self.store.get_doctor(doctor_id)
        today = self.clock.today()

        with self.sequencer.lock_for(doctor_id, today):
            current = self.sequencer.current(
                self.store.find_entries(doctor_id, today, [AppointmentStatus.IN_PROGRESS])
            )
            if current is None:
                raise NotFound(f"Doctor {doctor_id} has no patient in progress")
            completed = transition(current, AppointmentStatus.COMPLETED, self.clock.now(), actor=actor)
            self.store.update_entry(completed, expected_status=AppointmentStatus.IN_PROGRESS)

        logger.info("patient_completed", doctor_id=doctor_id, entry_id=completed.id, actor=actor)
        self._publish(EventAction.STATUS_CHANGED, completed, doctor)
        return completed

    # Status changes by entry id

    def update_status(
        self,
        entry_id: str,
        status,
        actor: Optional[str] = None,
        reason: Optional[str] = None
    ) -> QueueEntry:
        """
        Move an entry along a lifecycle edge.

        Raises:
            ValidationError: Unknown status value
            NotFound: Unknown entry
            InvalidTransition: Edge not allowed, or the doctor is already
                seeing another patient (target in_progress)
            ConcurrencyConflict: Entry changed since it was read
        """
        entry_id = _require_id(entry_id, "appointment ID")
        try:
            target = AppointmentStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in AppointmentStatus)
            raise ValidationError(f"Invalid status '{status}', expected one of: {allowed}")

        entry = self.store.get_entry(entry_id)

        with self.sequencer.lock_for(entry.doctor_id, entry.date):
            if target == AppointmentStatus.IN_PROGRESS:
                current = self.sequencer.current(
                    self.store.find_entries(entry.doctor_id, entry.date, [AppointmentStatus.IN_PROGRESS])
                )
                if current is not None and current.id != entry.id:
                    raise InvalidTransition(
                        f"Doctor {entry.doctor_id} already has token {current.token} in progress",
                        current=entry.status.value,
                        target=target.value,
                    )
            updated = transition(entry, target, self.clock.now(), actor=actor, reason=reason)
            self.store.update_entry(updated, expected_status=entry.status)

        action = EventAction.CANCELLED if target == AppointmentStatus.CANCELLED else EventAction.STATUS_CHANGED
        logger.info(
            "appointment_status_changed",
            entry_id=entry.id,
            doctor_id=entry.doctor_id,
            from_status=entry.status.value,
            to_status=target.value,
            actor=actor,
        )
        self._publish(action, updated)
        return updated

    def confirm(self, entry_id: str, actor: Optional[str] = None) -> QueueEntry:
        """Check a booked patient in (pending -> confirmed)."""
        return self.update_status(entry_id, AppointmentStatus.CONFIRMED, actor=actor)

    def cancel(self, entry_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> QueueEntry:
        """Cancel an entry, recording who cancelled it and why."""
        return self.update_status(entry_id, AppointmentStatus.CANCELLED, actor=actor, reason=reason)

    def mark_no_show(self, entry_id: str, actor: Optional[str] = None) -> QueueEntry:
        return self.update_status(entry_id, AppointmentStatus.NO_SHOW, actor=actor)

    def update_payment_status(
        self,
        entry_id: str,
        payment_status,
        amount: Optional[float] = None,
        actor: Optional[str] = None
    ) -> QueueEntry:
        """
        Record payment state for an entry.

        Raises:
            ValidationError: Unknown payment status or negative amount
            NotFound: Unknown entry
            ConcurrencyConflict: Entry changed since it was read
        """
        entry_id = _require_id(entry_id, "appointment ID")
        try:
            status = PaymentStatus(payment_status)
        except ValueError:
            raise ValidationError(f"Invalid payment status '{payment_status}', expected 'pending' or 'paid'")
        if amount is not None and amount < 0:
            raise ValidationError("Payment amount cannot be negative")

        entry = self.store.get_entry(entry_id)
        updated = replace(
            entry,
            payment_status=status,
            payment_amount=amount if amount is not None else entry.payment_amount,
            updated_at=self.clock.now(),
        )
        self.store.update_entry(updated, expected_status=entry.status)

        logger.info("payment_updated", entry_id=entry.id, payment_status=status.value, actor=actor)
        self._publish(EventAction.PAYMENT_UPDATED, updated)
        return updated

    # Queries

    def get_entry(self, entry_id: str) -> QueueEntry:
        return self.store.get_entry(_require_id(entry_id, "appointment ID"))

    def get_doctor_queue(self, doctor_id: str, target_date=None) -> DoctorQueue:
        doctor_id = _require_id(doctor_id, "doctor ID")
        self.store.get_doctor(doctor_id)
        target_date = parse_date(target_date) if target_date is not None else self.clock.today()

        entries = self.store.find_entries(doctor_id, target_date)
        return DoctorQueue(
            doctor_id=doctor_id,
            date=target_date,
            current=self.sequencer.current(entries),
            waiting=self.sequencer.waiting(entries),
            entries=self.sequencer.display_order(entries),
        )

    def get_all_queues(self, target_date=None) -> Dict[str, List[QueueEntry]]:
        """Every doctor's queue for a date, keyed by doctor id, in display order."""
        target_date = parse_date(target_date) if target_date is not None else self.clock.today()
        grouped: Dict[str, List[QueueEntry]] = {}
        for entry in self.store.find_entries_by_date(target_date):
            grouped.setdefault(entry.doctor_id, []).append(entry)
        return {
            doctor_id: self.sequencer.display_order(entries)
            for doctor_id, entries in grouped.items()
        }

    def list_appointments(
        self,
        status=None,
        doctor_id: Optional[str] = None,
        target_date=None,
        page: int = 1,
        limit: int = config.DEFAULT_PAGE_SIZE,
        doctor_user_id: Optional[str] = None
    ) -> List[QueueEntry]:
        """
        Filtered, paginated listing across doctors and dates.

        Args:
            status: Only entries in this lifecycle state
            doctor_id: Only this doctor's entries
            target_date: Only entries on this date (date or YYYY-MM-DD)
            page: 1-based page number
            limit: Page size, at most config.MAX_PAGE_SIZE
            doctor_user_id: Restrict to doctors owned by this user account

        Raises:
            ValidationError: Unknown status, bad date or bad page bounds
        """
        if page < 1:
            raise ValidationError("page must be 1 or greater")
        if not 1 <= limit <= config.MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {config.MAX_PAGE_SIZE}")
        wanted = None
        if status is not None:
            try:
                wanted = AppointmentStatus(status)
            except ValueError:
                allowed = ", ".join(s.value for s in AppointmentStatus)
                raise ValidationError(f"Invalid status '{status}', expected one of: {allowed}")
        target_date = parse_date(target_date) if target_date is not None else None

        doctor_ids = None
        if doctor_user_id is not None:
            doctor_ids = self.store.find_doctor_ids_for_user(doctor_user_id)
        if doctor_id is not None:
            doctor_id = _require_id(doctor_id, "doctor ID")
            doctor_ids = [doctor_id] if doctor_ids is None or doctor_id in doctor_ids else []
        if doctor_ids == []:
            return []

        return self.store.list_entries(
            status=wanted,
            doctor_ids=doctor_ids,
            target_date=target_date,
            limit=limit,
            offset=(page - 1) * limit,
        )

    def list_doctor_statuses(self) -> List[dict]:
        """
        Front-desk overview of today's doctors.

        status is ``busy`` with a patient in progress, ``available`` when
        working today and accepting patients, ``off_duty`` otherwise.
        """
        today = self.clock.today()
        queues = self.get_all_queues(today)
        overview = []
        for doctor in self.store.list_doctors():
            entries = queues.get(doctor.id, [])
            current = self.sequencer.current(entries)
            if current is not None:
                status = "busy"
            elif doctor.availability.accepting_patients and self.resolver.is_working_day(doctor.availability, today):
                status = "available"
            else:
                status = "off_duty"
            overview.append({
                "doctor_id": doctor.id,
                "name": doctor.name,
                "specialization": doctor.specialization,
                "consultation_fee": doctor.consultation_fee,
                "status": status,
                "current_token": current.token if current else None,
                "waiting_count": len(self.sequencer.waiting(entries)),
            })
        return overview

    def get_availability(
        self,
        doctor_id: str,
        target_date,
        time_of_day=TimeOfDay.ANY
    ) -> AvailabilityView:
        doctor_id = _require_id(doctor_id, "doctor ID")
        target_date = parse_date(target_date)
        try:
            preference = TimeOfDay(time_of_day)
        except ValueError:
            raise ValidationError(f"Invalid time of day '{time_of_day}', expected morning, afternoon or any")

        doctor = self.store.get_doctor(doctor_id)
        occupied = occupied_times(self.store.find_entries(doctor_id, target_date))
        view = self.resolver.describe(doctor.availability, target_date, occupied)
        view.available_slots = self.time_filter.filter_by_time_of_day(view.available_slots, preference)
        return view

    def update_availability(
        self,
        doctor_id: str,
        working_days: Optional[Iterable[str]] = None,
        start_time=None,
        end_time=None,
        slot_duration: Optional[int] = None,
        accepting_patients: Optional[bool] = None
    ) -> DoctorAvailability:
        """Partial update of a doctor's schedule; unset fields are kept."""
        doctor_id = _require_id(doctor_id, "doctor ID")
        current = self.store.get_doctor(doctor_id).availability
        availability = self._build_availability(
            doctor_id,
            working_days if working_days is not None else current.working_days,
            start_time if start_time is not None else current.start_time,
            end_time if end_time is not None else current.end_time,
            slot_duration if slot_duration is not None else current.slot_duration,
            accepting_patients if accepting_patients is not None else current.accepting_patients,
        )
        self.store.save_availability(availability)
        logger.info("availability_updated", **availability.to_dict())
        return availability

    def search_patients(self, term: str, limit: int = 20) -> List[Patient]:
        if not term or not term.strip():
            raise ValidationError("Search term is required")
        return self.store.search_patients(term, limit=limit)

    # Internals

    @staticmethod
    def _build_availability(
        doctor_id: str,
        working_days: Iterable[str],
        start_time,
        end_time,
        slot_duration: int,
        accepting_patients: bool
    ) -> DoctorAvailability:
        days = {str(day).strip().lower() for day in working_days}
        unknown = days - set(WEEKDAY_NAMES)
        if unknown:
            raise ValidationError(f"Unknown working day(s): {', '.join(sorted(unknown))}")

        start, end = parse_time(start_time), parse_time(end_time)
        if start >= end:
            raise ValidationError("Daily start time must be before end time")
        if slot_duration is None or int(slot_duration) <= 0:
            raise ValidationError(f"Slot duration must be positive, got {slot_duration}")

        return DoctorAvailability(
            doctor_id=doctor_id,
            working_days=tuple(day for day in WEEKDAY_NAMES if day in days),
            start_time=start,
            end_time=end,
            slot_duration=int(slot_duration),
            accepting_patients=bool(accepting_patients),
        )

    def _publish(
        self,
        action: EventAction,
        entry: QueueEntry,
        doctor: Optional[Doctor] = None,
        patient: Optional[Patient] = None
    ) -> None:
        """Fan the change out; lookups for user channels are best-effort."""
        user_ids = []
        try:
            doctor = doctor or self.store.get_doctor(entry.doctor_id)
            patient = patient or self.store.get_patient(entry.patient_id)
        except NotFound:
            logger.warning("event_recipient_lookup_failed", entry_id=entry.id)
        if patient is not None:
            user_ids.append(patient.user_id)
        if doctor is not None:
            user_ids.append(doctor.user_id)

        event = QueueEvent(
            action=action.value,
            doctor_id=entry.doctor_id,
            occurred_at=self.clock.now().isoformat(),
            entry=entry.to_dict(),
        )
        self.notifier.publish_entry_change(event, user_ids=[uid for uid in user_ids if uid])


def build_service(settings: Optional[config.Settings] = None) -> DispatchService:
    """Wire a DispatchService from environment settings."""
    settings = settings or config.get_settings()
    return DispatchService(
        store=QueueStore(settings.database_url, settings.clinic_timezone),
        notifier=create_notifier(settings),
        clock=SystemClock(settings.clinic_timezone),
    )
