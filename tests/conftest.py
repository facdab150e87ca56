"""Shared test fixtures."""
from datetime import date, datetime, time, timezone

import pytest

from clinic_dispatch.clock import FixedClock
from clinic_dispatch.models import (
    AppointmentStatus,
    DoctorAvailability,
    EntryKind,
    PriorityClass,
    QueueEntry,
)
from clinic_dispatch.notifier import InMemoryNotifier
from clinic_dispatch.service import DispatchService
from clinic_dispatch.store import QueueStore

# 2026-10-19 is a Monday
MONDAY = date(2026, 10, 19)
TUESDAY = date(2026, 10, 20)
SATURDAY = date(2026, 10, 24)
MONDAY_MORNING = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Clock pinned to Monday 08:00, before the doctors start."""
    return FixedClock(MONDAY_MORNING)


@pytest.fixture
def store():
    """Create QueueStore with in-memory database."""
    store = QueueStore(database_url="sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def notifier():
    notifier = InMemoryNotifier()
    yield notifier
    notifier.close()


@pytest.fixture
def service(store, notifier, clock):
    return DispatchService(store=store, notifier=notifier, clock=clock)


@pytest.fixture
def doctor(service):
    """Mon-Fri 09:00-17:00, 30-minute slots."""
    return service.register_doctor(
        "Dr. Ada Okafor",
        doctor_id="doc-1",
        user_id="user-doc-1",
        specialization="General Practice",
        consultation_fee=50.0,
    )


@pytest.fixture
def other_doctor(service):
    return service.register_doctor(
        "Dr. Lin Park",
        doctor_id="doc-2",
        user_id="user-doc-2",
        specialization="Pediatrics",
        consultation_fee=70.0,
    )


@pytest.fixture
def patients(service):
    """Five registered patients: pat-1 .. pat-5."""
    return [
        service.register_patient(
            f"Patient {i}",
            patient_id=f"pat-{i}",
            phone=f"555-010{i}",
            user_id=f"user-pat-{i}",
        )
        for i in range(1, 6)
    ]


@pytest.fixture
def availability():
    """Default weekday schedule, detached from any store."""
    return DoctorAvailability(
        doctor_id="doc-1",
        working_days=("monday", "tuesday", "wednesday", "thursday", "friday"),
        start_time=time(9, 0),
        end_time=time(17, 0),
        slot_duration=30,
    )


@pytest.fixture
def make_entry():
    """Factory for QueueEntry objects with sensible defaults."""
    def _create(
        queue_number: int,
        status=AppointmentStatus.CONFIRMED,
        priority=PriorityClass.REGULAR,
        scheduled_time=None,
        doctor_id="doc-1",
        entry_date=MONDAY,
    ):
        kind = EntryKind.BOOKED if scheduled_time else EntryKind.WALK_IN
        return QueueEntry(
            id=f"{doctor_id}-{entry_date.isoformat()}-{queue_number}",
            doctor_id=doctor_id,
            patient_id=f"pat-{queue_number}",
            date=entry_date,
            queue_number=queue_number,
            status=status,
            kind=kind,
            priority=priority,
            scheduled_time=scheduled_time,
            created_at=MONDAY_MORNING,
            updated_at=MONDAY_MORNING,
        )
    return _create
