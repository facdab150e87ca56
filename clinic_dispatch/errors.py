"""Error taxonomy for scheduling and dispatch.

Every error is recoverable and caller-facing: the API layer turns each one
into a structured ``ErrorResponse`` using ``code`` and ``status_code``.
"""


class DispatchError(Exception):
    """Base class for all caller-facing dispatch errors."""
    code = "DISPATCH_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchError):
    """Malformed input: date, time, doctor or patient id."""
    code = "VALIDATION_ERROR"
    status_code = 422


class SlotConflict(DispatchError):
    """Requested time is already held by a non-cancelled entry."""
    code = "SLOT_CONFLICT"
    status_code = 409

    def __init__(self, message: str, requested_time: str = None):
        super().__init__(message)
        self.requested_time = requested_time


class DoctorUnavailable(DispatchError):
    """Doctor does not work that day or is not accepting patients."""
    code = "DOCTOR_UNAVAILABLE"
    status_code = 409


class QueueEmpty(DispatchError):
    """No confirmed entries waiting for the doctor."""
    code = "QUEUE_EMPTY"
    status_code = 404


class InvalidTransition(DispatchError):
    """Requested status change is not an edge of the lifecycle."""
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, message: str, current: str = None, target: str = None):
        super().__init__(message)
        self.current = current
        self.target = target


class NotFound(DispatchError):
    """Entry, doctor or patient id does not resolve."""
    code = "NOT_FOUND"
    status_code = 404


class ConcurrencyConflict(DispatchError):
    """A concurrent writer won the race; safe to retry once."""
    code = "CONCURRENCY_CONFLICT"
    status_code = 409
