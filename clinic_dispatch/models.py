"""Domain records for doctors, patients and queue entries.

Closed vocabularies are str Enums; records are dataclasses. Mapping to
database rows lives in store.py.
"""
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from clinic_dispatch.clock import format_time


class AppointmentStatus(str, Enum):
    """Lifecycle states of a queue entry (see state_machine.py)."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class EntryKind(str, Enum):
    BOOKED = "booked"
    WALK_IN = "walk-in"


class PriorityClass(str, Enum):
    """Triage bucket; lower rank is dispatched first."""
    EMERGENCY = "emergency"
    PRIORITY = "priority"
    REGULAR = "regular"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    PriorityClass.EMERGENCY: 0,
    PriorityClass.PRIORITY: 1,
    PriorityClass.REGULAR: 2,
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


@dataclass
class DoctorAvailability:
    """
    Weekly schedule of a doctor.

    working_days holds lowercase weekday names in week order.
    """
    doctor_id: str
    working_days: Tuple[str, ...]
    start_time: time
    end_time: time
    slot_duration: int
    accepting_patients: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "working_days": list(self.working_days),
            "start_time": format_time(self.start_time),
            "end_time": format_time(self.end_time),
            "slot_duration": self.slot_duration,
            "accepting_patients": self.accepting_patients,
        }


@dataclass
class Doctor:
    id: str
    name: str
    availability: DoctorAvailability
    user_id: Optional[str] = None
    specialization: Optional[str] = None
    consultation_fee: Optional[float] = None


@dataclass
class Patient:
    id: str
    name: str
    phone: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class QueueEntry:
    """
    An appointment or walk-in sitting in a doctor's daily queue.

    Entries are never deleted; cancelled and no_show are terminal states
    so the day keeps a full audit trail.
    """
    id: str
    doctor_id: str
    patient_id: str
    date: date
    queue_number: int
    status: AppointmentStatus
    kind: EntryKind
    priority: PriorityClass
    scheduled_time: Optional[time] = None
    end_time: Optional[time] = None
    symptoms: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_amount: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    called_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def token(self) -> str:
        """Display token shown on front-desk screens, e.g. ``007``."""
        return f"{self.queue_number:03d}"

    @property
    def rank(self) -> Tuple[int, int]:
        return (self.priority.rank, self.queue_number)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "doctor_id": self.doctor_id,
            "patient_id": self.patient_id,
            "date": self.date.isoformat(),
            "scheduled_time": format_time(self.scheduled_time),
            "end_time": format_time(self.end_time),
            "queue_number": self.queue_number,
            "token": self.token,
            "status": self.status.value,
            "kind": self.kind.value,
            "priority": self.priority.value,
            "symptoms": self.symptoms,
            "payment_status": self.payment_status.value,
            "payment_amount": self.payment_amount,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "called_by": self.called_by,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
