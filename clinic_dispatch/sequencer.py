"""Queue numbering and dispatch ordering.

Numbering: per doctor per date, 1 + the highest number already issued that
day. Reading the max and inserting the new entry is a compute-then-insert
sequence, so callers hold ``lock_for(doctor_id, date)`` around it. The
store's unique constraint on (doctor_id, date, queue_number) catches races
between server processes that do not share this lock.

Dispatch: the next patient is the confirmed entry with the lowest
(priority rank, queue number).
"""
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from clinic_dispatch.models import AppointmentStatus, QueueEntry

DISPLAY_STATUS_ORDER = {
    AppointmentStatus.IN_PROGRESS: 0,
    AppointmentStatus.CONFIRMED: 1,
    AppointmentStatus.PENDING: 2,
    AppointmentStatus.COMPLETED: 3,
    AppointmentStatus.NO_SHOW: 4,
    AppointmentStatus.CANCELLED: 5,
}


class _KeyLock:
    """A mutex plus the number of callers holding or waiting on it."""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class QueueSequencer:
    """
    Assign queue numbers and pick who is next.

    Pattern: per-key mutex registry (single-instance serialization).
    Good for: one API process (any number of threads).
    NOT enough for: several processes - the store constraint covers that.

    A key stays registered only while someone holds or waits on its lock,
    so the registry is empty whenever the service is idle.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, date], _KeyLock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def lock_for(self, doctor_id: str, target_date: date) -> Iterator[None]:
        """Serialize numbering and dispatch for one doctor-day."""
        key = (doctor_id, target_date)
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def active_keys(self) -> List[Tuple[str, date]]:
        """Doctor-days whose lock is currently held or awaited."""
        with self._registry_lock:
            return list(self._locks)

    @staticmethod
    def next_queue_number(current_max: Optional[int]) -> int:
        return (current_max or 0) + 1

    @staticmethod
    def rank(entry: QueueEntry) -> Tuple[int, int]:
        """Dispatch rank: (priority class rank, queue number), ascending."""
        return entry.rank

    def waiting(self, entries: Iterable[QueueEntry]) -> List[QueueEntry]:
        """Confirmed entries in dispatch order."""
        confirmed = [e for e in entries if e.status == AppointmentStatus.CONFIRMED]
        return sorted(confirmed, key=self.rank)

    def select_next(self, entries: Iterable[QueueEntry]) -> Optional[QueueEntry]:
        """Lowest-ranked confirmed entry, or None if nobody is waiting."""
        waiting = self.waiting(entries)
        return waiting[0] if waiting else None

    @staticmethod
    def current(entries: Iterable[QueueEntry]) -> Optional[QueueEntry]:
        """The entry currently with the doctor, if any."""
        for entry in entries:
            if entry.status == AppointmentStatus.IN_PROGRESS:
                return entry
        return None

    def display_order(self, entries: Iterable[QueueEntry]) -> List[QueueEntry]:
        """
        Order for queue boards.

        Current patient first, then waiting patients in dispatch order,
        then the rest (pending bookings, finished entries) by queue number.
        """
        def key(entry: QueueEntry):
            group = DISPLAY_STATUS_ORDER[entry.status]
            if entry.status == AppointmentStatus.CONFIRMED:
                return (group, *self.rank(entry))
            return (group, 0, entry.queue_number)

        return sorted(entries, key=key)
