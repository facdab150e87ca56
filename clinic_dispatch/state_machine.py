"""Appointment lifecycle state machine.

Happy path for bookings: pending -> confirmed -> in_progress -> completed.
Walk-ins enter directly at confirmed. Cancelled and no_show branch off the
live states; completed, cancelled and no_show are terminal.
"""
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from clinic_dispatch.errors import InvalidTransition
from clinic_dispatch.models import AppointmentStatus, EntryKind, QueueEntry


# State machine transition map
# Pattern: Current state -> [allowed next states]
VALID_TRANSITIONS: Dict[AppointmentStatus, List[AppointmentStatus]] = {
    AppointmentStatus.PENDING: [
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.CONFIRMED: [
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,  # patient never arrived
    ],
    AppointmentStatus.IN_PROGRESS: [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    ],
    # Terminal states
    AppointmentStatus.COMPLETED: [],
    AppointmentStatus.CANCELLED: [],
    AppointmentStatus.NO_SHOW: [],
}

TERMINAL_STATES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


def initial_status(kind: EntryKind) -> AppointmentStatus:
    """Walk-ins are already at the desk; bookings wait for check-in."""
    if kind == EntryKind.WALK_IN:
        return AppointmentStatus.CONFIRMED
    return AppointmentStatus.PENDING


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def is_terminal(status: AppointmentStatus) -> bool:
    return status in TERMINAL_STATES


def transition(
    entry: QueueEntry,
    target: AppointmentStatus,
    at: datetime,
    actor: Optional[str] = None,
    reason: Optional[str] = None
) -> QueueEntry:
    """
    Apply a status change and return the updated entry.

    The input entry is never mutated; on an illegal edge nothing changes.

    Args:
        entry: Current entry
        target: Requested status
        at: Timestamp of the change
        actor: User id performing the change (recorded for call-in/cancel)
        reason: Cancellation reason

    Returns:
        New QueueEntry with status and audit fields updated

    Raises:
        InvalidTransition: If target is not reachable from entry.status
    """
    target = AppointmentStatus(target)
    if not can_transition(entry.status, target):
        raise InvalidTransition(
            f"Cannot change appointment {entry.id} from "
            f"'{entry.status.value}' to '{target.value}'",
            current=entry.status.value,
            target=target.value,
        )

    changes = {"status": target, "updated_at": at}
    if target == AppointmentStatus.IN_PROGRESS:
        changes.update(started_at=at, called_by=actor)
    elif target == AppointmentStatus.COMPLETED:
        changes["completed_at"] = at
    elif target == AppointmentStatus.CANCELLED:
        changes.update(cancelled_by=actor, cancellation_reason=reason)

    return replace(entry, **changes)
