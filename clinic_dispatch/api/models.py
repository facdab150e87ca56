"""Pydantic models for API request/response validation."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_dispatch.models import AppointmentStatus, PaymentStatus, PriorityClass


class BookAppointmentRequest(BaseModel):
    """Request schema for POST /api/v1/appointments."""
    doctor_id: str = Field(..., min_length=1, max_length=64)
    patient_id: str = Field(..., min_length=1, max_length=64)
    appointment_date: str = Field(
        ...,
        description="Date in YYYY-MM-DD format",
        examples=["2026-10-19"]
    )
    appointment_time: str = Field(
        ...,
        description="Slot start in 24h HH:MM format",
        examples=["09:30"]
    )
    symptoms: Optional[str] = Field(None, max_length=2000)
    priority: Optional[PriorityClass] = Field(
        None,
        description="Explicit priority; omit to let triage decide"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "doctor_id": "doc-1",
                "patient_id": "pat-1",
                "appointment_date": "2026-10-19",
                "appointment_time": "09:30",
                "symptoms": "Persistent cough"
            }
        }
    )


class WalkInRequest(BaseModel):
    """Request schema for POST /api/v1/queue/walk-in."""
    doctor_id: str = Field(..., min_length=1, max_length=64)
    patient_id: str = Field(..., min_length=1, max_length=64)
    symptoms: Optional[str] = Field(None, max_length=2000)
    priority: Optional[PriorityClass] = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus
    reason: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, examples=["Patient rescheduled"])


class PaymentUpdateRequest(BaseModel):
    payment_status: PaymentStatus
    amount: Optional[float] = Field(None, ge=0)


class AvailabilityUpdateRequest(BaseModel):
    """Partial update; unset fields keep their current value."""
    working_days: Optional[List[str]] = Field(None, examples=[["monday", "wednesday", "friday"]])
    start_time: Optional[str] = Field(None, examples=["09:00"])
    end_time: Optional[str] = Field(None, examples=["17:00"])
    slot_duration: Optional[int] = Field(None, gt=0, le=480)
    accepting_patients: Optional[bool] = None


class EntryResponse(BaseModel):
    """A queue entry as returned to clients."""
    id: str
    doctor_id: str
    patient_id: str
    date: str
    scheduled_time: Optional[str] = None
    end_time: Optional[str] = None
    queue_number: int
    token: str = Field(..., description="Zero-padded queue number shown on displays")
    status: AppointmentStatus
    kind: str
    priority: PriorityClass
    symptoms: Optional[str] = None
    payment_status: PaymentStatus
    payment_amount: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    called_by: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class AppointmentListResponse(BaseModel):
    """One page of a filtered appointment listing."""
    page: int
    limit: int
    items: List[EntryResponse] = Field(default_factory=list)


class DoctorQueueResponse(BaseModel):
    doctor_id: str
    date: str
    current: Optional[EntryResponse] = None
    waiting: List[EntryResponse] = Field(default_factory=list)
    entries: List[EntryResponse] = Field(default_factory=list)
    waiting_count: int = 0


class AllQueuesResponse(BaseModel):
    date: str
    queues: Dict[str, List[EntryResponse]] = Field(default_factory=dict)


class DoctorStatusResponse(BaseModel):
    doctor_id: str
    name: str
    specialization: Optional[str] = None
    consultation_fee: Optional[float] = None
    status: str = Field(..., description="busy, available or off_duty")
    current_token: Optional[str] = None
    waiting_count: int = 0


class AvailabilityResponse(BaseModel):
    doctor_id: str
    date: str
    is_available: bool
    available_slots: List[str] = Field(default_factory=list)
    booked_slots: List[str] = Field(default_factory=list)


class ScheduleResponse(BaseModel):
    doctor_id: str
    working_days: List[str]
    start_time: str
    end_time: str
    slot_duration: int
    accepting_patients: bool


class PatientResponse(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[Any] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Slot Conflict",
                "detail": "Time slot 09:00 on 2026-10-19 is already booked",
                "code": "SLOT_CONFLICT"
            }
        }
    )
