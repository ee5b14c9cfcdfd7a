"""FastAPI dependency injection functions."""
from enum import Enum

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel

from clinic_queue import config
from clinic_queue.notifications import log_event
from clinic_queue.service import ClinicService


class CallerRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class Caller(BaseModel):
    """Identity resolved by the upstream gateway; trusted as-is."""
    user_id: str
    role: CallerRole


# Initialize singletons
_clinic_service = None


def get_clinic_service() -> ClinicService:
    """Get or create the clinic service singleton."""
    global _clinic_service
    if _clinic_service is None:
        _clinic_service = ClinicService.from_url(config.DATABASE_URL)
        _clinic_service.dispatcher.subscribe(log_event)
    return _clinic_service


def reset_clinic_service():
    """Close and drop the singleton (shutdown, tests)."""
    global _clinic_service
    if _clinic_service is not None:
        _clinic_service.close()
    _clinic_service = None


async def get_caller(
    x_user_id: str = Header(..., min_length=1, description="Caller user id"),
    x_user_role: str = Header(..., description="patient, doctor or admin"),
) -> Caller:
    """
    Resolve the caller from gateway headers.

    Raises:
        HTTPException 401: If the role header is not a known role
    """
    try:
        role = CallerRole(x_user_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown role: {x_user_role}",
        )
    return Caller(user_id=x_user_id, role=role)


def require_role(*roles: CallerRole):
    """Dependency factory: allow only the given roles."""

    async def _check(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{caller.role.value}' may not perform this action",
            )
        return caller

    return _check


require_staff = require_role(CallerRole.DOCTOR, CallerRole.ADMIN)
require_admin = require_role(CallerRole.ADMIN)
