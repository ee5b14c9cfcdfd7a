"""Configuration for the clinic appointment and queue engine.

Business policy lives here as module constants; deployment values are read
from the environment (a local .env file is loaded if present).
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///clinic_queue.db")

# Queue policy
AVERAGE_CONSULTATION_MINUTES = int(os.getenv("AVERAGE_CONSULTATION_MINUTES", "15"))
AUTO_START_CONSULTATION = _env_bool("AUTO_START_CONSULTATION", True)

# Clinic local time ("today", past slots)
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

# Defaults applied to doctor schedules that omit them
DEFAULT_SLOT_DURATION_MINUTES = 30
DEFAULT_MAX_APPOINTMENTS_PER_SLOT = 1

# Booking details
MAX_REASON_LENGTH = 500

# Appointment sweep (stale requests, overdue consultations)
APPOINTMENT_SWEEP_INTERVAL_SECONDS = int(
    os.getenv("APPOINTMENT_SWEEP_INTERVAL_SECONDS", "3600")
)
AUTO_CANCEL_REASON = "Automatically cancelled - Doctor did not approve by end of day"

# Notification dispatch
NOTIFICATION_FAILURE_THRESHOLD = int(os.getenv("NOTIFICATION_FAILURE_THRESHOLD", "5"))
NOTIFICATION_RETRY_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_RETRY_TIMEOUT_SECONDS", "60"))

# Logging / API
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
