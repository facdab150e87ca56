"""Slot allocation for booked appointments.

Decides whether a booking request may be accepted and computes its time
window. It never persists or numbers an entry: numbering belongs to the
queue sequencer because walk-ins skip slot validation but still need a
queue number.
"""
from dataclasses import dataclass
from datetime import date, time
from typing import Iterable, Optional

from clinic_dispatch.availability import AvailabilityResolver
from clinic_dispatch.clock import add_minutes, format_time, parse_date, parse_time
from clinic_dispatch.errors import DoctorUnavailable, SlotConflict, ValidationError
from clinic_dispatch.models import AppointmentStatus, DoctorAvailability, QueueEntry


@dataclass(frozen=True)
class Reservation:
    """Accepted time window for a booking."""
    date: date
    start_time: time
    end_time: time


def occupied_times(entries: Iterable[QueueEntry]) -> list:
    """Scheduled times held by non-cancelled entries."""
    return [
        entry.scheduled_time
        for entry in entries
        if entry.scheduled_time is not None
        and entry.status != AppointmentStatus.CANCELLED
    ]


class SlotAllocator:
    """Validate booking requests against the availability grid."""

    def __init__(self, resolver: Optional[AvailabilityResolver] = None):
        self.resolver = resolver or AvailabilityResolver()

    def reserve(
        self,
        availability: DoctorAvailability,
        target_date,
        requested_time,
        existing_entries: Iterable[QueueEntry] = (),
        today: Optional[date] = None
    ) -> Reservation:
        """
        Check a booking request and compute its end time.

        Args:
            availability: Doctor's weekly schedule
            target_date: Requested date (date or YYYY-MM-DD)
            requested_time: Requested start (time or HH:MM)
            existing_entries: Entries already on the doctor's day
            today: Reject dates before this one when given

        Returns:
            Reservation with the computed end time

        Raises:
            ValidationError: Malformed input, past date, or time off the slot grid
            DoctorUnavailable: Not accepting patients or not a working day
            SlotConflict: Time already held by a non-cancelled entry
        """
        target_date = parse_date(target_date)
        requested = parse_time(requested_time)
        label = format_time(requested)

        if today is not None and target_date < today:
            raise ValidationError(
                f"Cannot book {target_date.isoformat()}: date is in the past"
            )
        if not availability.accepting_patients:
            raise DoctorUnavailable(
                f"Doctor {availability.doctor_id} is not accepting patients"
            )
        if not self.resolver.is_working_day(availability, target_date):
            raise DoctorUnavailable(
                f"Doctor {availability.doctor_id} does not work on "
                f"{target_date.strftime('%A')} {target_date.isoformat()}"
            )

        if requested not in self.resolver.slot_grid(availability):
            raise ValidationError(
                f"Time {label} is outside working hours "
                f"({format_time(availability.start_time)}-{format_time(availability.end_time)}, "
                f"{availability.slot_duration}-minute slots)"
            )

        if requested in occupied_times(existing_entries):
            raise SlotConflict(
                f"Time slot {label} on {target_date.isoformat()} is already booked",
                requested_time=label,
            )

        return Reservation(
            date=target_date,
            start_time=requested,
            end_time=add_minutes(requested, availability.slot_duration),
        )

    def check_walk_in(self, availability: DoctorAvailability) -> None:
        """
        Walk-ins skip the time check but need a doctor taking patients.

        Raises:
            DoctorUnavailable: If the doctor is not accepting patients
        """
        if not availability.accepting_patients:
            raise DoctorUnavailable(
                f"Doctor {availability.doctor_id} is not accepting patients"
            )
