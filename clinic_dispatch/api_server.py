"""FastAPI server for clinic scheduling and queue dispatch.

Features:
- Booking, walk-in and dispatch endpoints under /api/v1
- Global exception handling (every DispatchError -> ErrorResponse)
- Request IDs in logs and X-Request-ID response headers
- Server-Sent Events stream for queue displays
- Health check endpoint
"""
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from clinic_dispatch import config
from clinic_dispatch.api.dependencies import Actor, get_actor, get_service, require_staff
from clinic_dispatch.api.models import (
    AllQueuesResponse,
    AppointmentListResponse,
    AvailabilityResponse,
    AvailabilityUpdateRequest,
    BookAppointmentRequest,
    CancelRequest,
    DoctorQueueResponse,
    DoctorStatusResponse,
    EntryResponse,
    ErrorResponse,
    PatientResponse,
    PaymentUpdateRequest,
    ScheduleResponse,
    StatusUpdateRequest,
    WalkInRequest,
)
from clinic_dispatch.api.streaming import stream_queue_events
from clinic_dispatch.availability import TimeOfDay
from clinic_dispatch.clock import parse_date
from clinic_dispatch.errors import DispatchError
from clinic_dispatch.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from clinic_dispatch.models import AppointmentStatus
from clinic_dispatch.notifier import doctor_channel, user_channel
from clinic_dispatch.service import DispatchService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    settings = config.get_settings()
    setup_structured_logging(settings.log_level)
    logger.info(
        "server_starting",
        notifier_backend=settings.notifier_backend,
        clinic_timezone=settings.clinic_timezone,
    )

    yield

    # Only tear down what was actually built
    if get_service.cache_info().currsize:
        service = get_service()
        service.notifier.close()
        service.store.close()
    logger.info("server_stopped")


app = FastAPI(
    title="Clinic Queue Dispatch API",
    description="Appointment scheduling and patient queue dispatch",
    version=config.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestIDMiddleware)


def _error_title(exc: Exception) -> str:
    """``SlotConflict`` -> ``Slot Conflict``."""
    return re.sub(r"(?<!^)(?=[A-Z])", " ", type(exc).__name__)


# Global exception handlers
@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Map domain errors to their HTTP status and error code."""
    logger.info(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        detail=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=_error_title(exc),
            detail=exc.message,
            code=exc.code
        ).model_dump()
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors consistently."""
    logger.warning("request_validation_failed", path=request.url.path, errors=str(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="Validation Error",
            detail=str(exc.errors()),
            code="VALIDATION_ERROR"
        ).model_dump()
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected exceptions."""
    logger.error("unexpected_error", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal Server Error",
            detail="An unexpected error occurred. Please try again later.",
            code="INTERNAL_ERROR"
        ).model_dump()
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": "clinic-dispatch-api",
        "version": config.API_VERSION
    }


# Appointments

@app.post(
    "/api/v1/appointments",
    tags=["Appointments"],
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED
)
def book_appointment(
    request: BookAppointmentRequest,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    """
    Book a timed appointment slot.

    Raises:
        409 SLOT_CONFLICT: Slot already booked
        409 DOCTOR_UNAVAILABLE: Doctor off that day / not accepting
        422 VALIDATION_ERROR: Bad date/time, past date, off-grid time
        404 NOT_FOUND: Unknown doctor or patient
    """
    entry = service.book_appointment(
        doctor_id=request.doctor_id,
        patient_id=request.patient_id,
        appointment_date=request.appointment_date,
        appointment_time=request.appointment_time,
        symptoms=request.symptoms,
        priority=request.priority,
        actor=actor.user_id,
    )
    return entry.to_dict()


@app.get("/api/v1/appointments", tags=["Appointments"], response_model=AppointmentListResponse)
def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    doctor_id: Optional[str] = Query(None),
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    actor: Actor = Depends(require_staff),
    service: DispatchService = Depends(get_service)
):
    """
    List appointments across doctors and dates.

    Doctors only see entries from their own queues.
    """
    entries = service.list_appointments(
        status=status_filter,
        doctor_id=doctor_id,
        target_date=date,
        page=page,
        limit=limit,
        doctor_user_id=actor.user_id if actor.role == "doctor" else None,
    )
    return {"page": page, "limit": limit, "items": [entry.to_dict() for entry in entries]}


@app.get("/api/v1/appointments/{entry_id}", tags=["Appointments"], response_model=EntryResponse)
def get_appointment(entry_id: str, service: DispatchService = Depends(get_service)):
    return service.get_entry(entry_id).to_dict()


@app.patch("/api/v1/appointments/{entry_id}/status", tags=["Appointments"], response_model=EntryResponse)
def update_appointment_status(
    entry_id: str,
    request: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    """Move an appointment along its lifecycle (409 INVALID_TRANSITION otherwise)."""
    entry = service.update_status(entry_id, request.status, actor=actor.user_id, reason=request.reason)
    return entry.to_dict()


@app.post("/api/v1/appointments/{entry_id}/cancel", tags=["Appointments"], response_model=EntryResponse)
def cancel_appointment(
    entry_id: str,
    request: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    reason = request.reason if request else None
    return service.cancel(entry_id, actor=actor.user_id, reason=reason).to_dict()


@app.patch("/api/v1/appointments/{entry_id}/payment", tags=["Appointments"], response_model=EntryResponse)
def update_payment(
    entry_id: str,
    request: PaymentUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    entry = service.update_payment_status(
        entry_id, request.payment_status, amount=request.amount, actor=actor.user_id
    )
    return entry.to_dict()


# Queue

@app.post(
    "/api/v1/queue/walk-in",
    tags=["Queue"],
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED
)
def add_walk_in(
    request: WalkInRequest,
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    """Add a walk-in patient to today's queue for a doctor."""
    entry = service.add_walk_in(
        doctor_id=request.doctor_id,
        patient_id=request.patient_id,
        symptoms=request.symptoms,
        priority=request.priority,
        actor=actor.user_id,
    )
    return entry.to_dict()


@app.get("/api/v1/queues", tags=["Queue"], response_model=AllQueuesResponse)
def get_all_queues(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    service: DispatchService = Depends(get_service)
):
    """Every doctor's queue for a date, for the front-desk board."""
    target_date = parse_date(date) if date else service.clock.today()
    queues = service.get_all_queues(target_date)
    return {
        "date": target_date.isoformat(),
        "queues": {
            doctor_id: [entry.to_dict() for entry in entries]
            for doctor_id, entries in queues.items()
        },
    }


@app.get("/api/v1/doctors/status", tags=["Doctors"], response_model=List[DoctorStatusResponse])
def get_doctor_statuses(service: DispatchService = Depends(get_service)):
    return service.list_doctor_statuses()


@app.get("/api/v1/doctors/{doctor_id}/queue", tags=["Doctors"], response_model=DoctorQueueResponse)
def get_doctor_queue(
    doctor_id: str,
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    service: DispatchService = Depends(get_service)
):
    return service.get_doctor_queue(doctor_id, date).to_dict()


@app.post("/api/v1/doctors/{doctor_id}/call-next", tags=["Doctors"], response_model=EntryResponse)
def call_next_patient(
    doctor_id: str,
    strict: bool = Query(False, description="Fail if a patient is already in progress"),
    actor: Actor = Depends(require_staff),
    service: DispatchService = Depends(get_service)
):
    """
    Call the next patient in.

    Returns the promoted entry, or the patient already in progress.

    Raises:
        404 QUEUE_EMPTY: No patients waiting
        409 INVALID_TRANSITION: strict=true and a patient is in progress
    """
    return service.call_next(doctor_id, actor=actor.user_id, strict=strict).to_dict()


@app.post("/api/v1/doctors/{doctor_id}/complete", tags=["Doctors"], response_model=EntryResponse)
def complete_current_patient(
    doctor_id: str,
    actor: Actor = Depends(require_staff),
    service: DispatchService = Depends(get_service)
):
    return service.complete_current(doctor_id, actor=actor.user_id).to_dict()


@app.get("/api/v1/doctors/{doctor_id}/availability", tags=["Doctors"], response_model=AvailabilityResponse)
def get_availability(
    doctor_id: str,
    date: str = Query(..., description="YYYY-MM-DD"),
    time_of_day: TimeOfDay = Query(TimeOfDay.ANY),
    service: DispatchService = Depends(get_service)
):
    return service.get_availability(doctor_id, date, time_of_day).to_dict()


@app.put("/api/v1/doctors/{doctor_id}/availability", tags=["Doctors"], response_model=ScheduleResponse)
def update_availability(
    doctor_id: str,
    request: AvailabilityUpdateRequest,
    actor: Actor = Depends(require_staff),
    service: DispatchService = Depends(get_service)
):
    availability = service.update_availability(
        doctor_id,
        working_days=request.working_days,
        start_time=request.start_time,
        end_time=request.end_time,
        slot_duration=request.slot_duration,
        accepting_patients=request.accepting_patients,
    )
    return availability.to_dict()


# Patients

@app.get("/api/v1/patients/search", tags=["Patients"], response_model=List[PatientResponse])
def search_patients(
    q: str = Query(..., min_length=1, description="Name or phone fragment"),
    actor: Actor = Depends(require_staff),
    service: DispatchService = Depends(get_service)
):
    return [
        {"id": p.id, "name": p.name, "phone": p.phone}
        for p in service.search_patients(q)
    ]


# Real-time

@app.get("/api/v1/events/stream", tags=["Events"])
def stream_events(
    doctor_id: Optional[str] = Query(None, description="Follow one doctor's queue"),
    mine: bool = Query(False, description="Follow the caller's own user channel"),
    actor: Actor = Depends(get_actor),
    service: DispatchService = Depends(get_service)
):
    """
    Subscribe to queue changes with Server-Sent Events.

    Channel: the caller's user channel when ``mine`` is set, else the
    doctor's channel when ``doctor_id`` is given, else every change.

    Response Format:
        event: next_called
        data: {"action": "next_called", "doctor_id": "...", "entry": {...}, "occurred_at": "..."}
    """
    if mine:
        if not actor.user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-User-ID header required",
            )
        channel = user_channel(actor.user_id)
    elif doctor_id:
        service.store.get_doctor(doctor_id)
        channel = doctor_channel(doctor_id)
    else:
        channel = config.GLOBAL_CHANNEL

    logger.info("event_stream_opened", channel=channel, user_id=actor.user_id)
    return StreamingResponse(
        stream_queue_events(service.notifier.subscribe(channel)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Run server
    uvicorn.run(
        "clinic_dispatch.api_server:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
