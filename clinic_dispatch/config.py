"""Configuration for the clinic dispatch system.

Business defaults live here as module constants - modify as needed without
touching code. Deployment settings are read from the environment (a local
``.env`` file is honoured via python-dotenv).
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


# Used when a doctor is registered without explicit working hours
DEFAULT_AVAILABILITY = {
    "days": ["monday", "tuesday", "wednesday", "thursday", "friday"],
    "start_time": "09:00",
    "end_time": "17:00",
    "slot_duration_minutes": 30,
}

# Triage heuristics for the default priority classifier
EMERGENCY_KEYWORDS = ("emergency", "critical")
PRIORITY_QUEUE_CUTOFF = 2  # queue numbers <= this are treated as priority

# Queue numbering: first attempt + one retry on ConcurrencyConflict
QUEUE_NUMBER_ATTEMPTS = 2

# Real-time fan-out
GLOBAL_CHANNEL = "queues"
DOCTOR_CHANNEL_PREFIX = "doctor-queue-"
USER_CHANNEL_PREFIX = "user-"
SUBSCRIBER_QUEUE_SIZE = 100
STREAM_KEEPALIVE_SECONDS = 15.0

# Roles allowed to drive a doctor's queue (call next / complete)
STAFF_ROLES = ("doctor", "receptionist", "nurse", "admin")

# Appointment listing pagination
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

API_VERSION = "1.0.0"


@dataclass(frozen=True)
class Settings:
    """Deployment settings resolved from environment variables."""
    database_url: str
    redis_url: Optional[str]
    notifier_backend: str
    log_level: str
    clinic_timezone: str


def get_settings() -> Settings:
    """
    Read settings from the environment.

    Environment:
        DATABASE_URL: SQLAlchemy URL (default: sqlite:///clinic_queue.db)
        REDIS_URL: Redis URL, required when NOTIFIER_BACKEND=redis
        NOTIFIER_BACKEND: "memory" (single instance) or "redis" (shared broker)
        LOG_LEVEL: DEBUG, INFO, WARNING, ERROR
        CLINIC_TIMEZONE: IANA zone used to decide what "today" is

    Returns:
        Settings instance
    """
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///clinic_queue.db"),
        redis_url=os.getenv("REDIS_URL"),
        notifier_backend=os.getenv("NOTIFIER_BACKEND", "memory").lower(),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        clinic_timezone=os.getenv("CLINIC_TIMEZONE", "UTC"),
    )
