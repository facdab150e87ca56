"""Availability resolution and slot filtering.

Given a doctor's weekly schedule and a target date, produce the theoretical
slot grid and subtract already-occupied times. Also supports time-of-day
filtering for front-desk slot pickers:
- morning: before 12:00
- afternoon: 12:00 and after
- any
"""
from dataclasses import dataclass, field
from datetime import date, time
from enum import Enum
from typing import Iterable, List

from clinic_dispatch.clock import format_time, iter_slot_times, parse_date, weekday_name
from clinic_dispatch.errors import ValidationError
from clinic_dispatch.models import DoctorAvailability


class TimeOfDay(str, Enum):
    """Time of day preferences."""
    MORNING = "morning"  # Before 12:00
    AFTERNOON = "afternoon"  # 12:00 and after
    ANY = "any"


@dataclass
class AvailabilityView:
    """Bookable and booked slots of one doctor on one date."""
    doctor_id: str
    date: date
    is_available: bool
    available_slots: List[time] = field(default_factory=list)
    booked_slots: List[time] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date.isoformat(),
            "is_available": self.is_available,
            "available_slots": [format_time(t) for t in self.available_slots],
            "booked_slots": [format_time(t) for t in self.booked_slots],
        }


class AvailabilityResolver:
    """Compute a doctor's bookable slots for a date."""

    def is_working_day(self, availability: DoctorAvailability, target_date: date) -> bool:
        return weekday_name(target_date) in availability.working_days

    def slot_grid(self, availability: DoctorAvailability) -> List[time]:
        """
        Full slot grid of a working day, ignoring bookings.

        Raises:
            ValidationError: If slot duration <= 0
        """
        return list(iter_slot_times(
            availability.start_time,
            availability.end_time,
            availability.slot_duration,
        ))

    def resolve(
        self,
        availability: DoctorAvailability,
        target_date,
        occupied: Iterable[time] = ()
    ) -> List[time]:
        """
        Ordered list of bookable slot starts for ``target_date``.

        Args:
            availability: Doctor's weekly schedule
            target_date: date or YYYY-MM-DD string
            occupied: Times already held by non-cancelled entries

        Returns:
            Slot starts, excluding occupied times. Empty if the doctor
            does not work that weekday.

        Raises:
            ValidationError: Invalid date or non-positive slot duration
        """
        target_date = parse_date(target_date)
        if availability.slot_duration <= 0:
            raise ValidationError(
                f"Slot duration must be positive, got {availability.slot_duration}"
            )
        if not self.is_working_day(availability, target_date):
            return []

        taken = set(occupied)
        return [slot for slot in self.slot_grid(availability) if slot not in taken]

    def describe(
        self,
        availability: DoctorAvailability,
        target_date,
        occupied: Iterable[time] = ()
    ) -> AvailabilityView:
        """Availability view for API consumers (free + booked slots)."""
        target_date = parse_date(target_date)
        booked = sorted(set(occupied))
        return AvailabilityView(
            doctor_id=availability.doctor_id,
            date=target_date,
            is_available=self.is_working_day(availability, target_date),
            available_slots=self.resolve(availability, target_date, booked),
            booked_slots=booked,
        )


class TimeFilter:
    """Filter availability slots by time of day."""

    MORNING_CUTOFF = 12  # 12:00 (noon)

    def filter_by_time_of_day(
        self,
        slots: List[time],
        preference: TimeOfDay
    ) -> List[time]:
        """
        Filter slots by time of day preference.

        Args:
            slots: Available slots
            preference: Morning, afternoon, or any

        Returns:
            Filtered slots
        """
        if preference == TimeOfDay.ANY:
            return slots

        if preference == TimeOfDay.MORNING:
            return [slot for slot in slots if slot.hour < self.MORNING_CUTOFF]
        return [slot for slot in slots if slot.hour >= self.MORNING_CUTOFF]
