"""API package initialization."""
from clinic_dispatch.api.models import (
    BookAppointmentRequest,
    EntryResponse,
    ErrorResponse,
    WalkInRequest,
)

__all__ = ["BookAppointmentRequest", "EntryResponse", "ErrorResponse", "WalkInRequest"]
