from datetime import datetime
from typing import Dict, Any, Optional, Iterable, List
from fastapi import status
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base class for custom exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)


class ValidationError(BaseCustomException):
    """Exception for validation errors"""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            error_code=error_code or "VALIDATION_ERROR"
        )


class NotFoundError(BaseCustomException):
    """Exception for resource not found errors"""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            error_code=error_code or "NOT_FOUND_ERROR"
        )


class ConflictError(BaseCustomException):
    """Exception for conflict errors"""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            error_code=error_code or "CONFLICT_ERROR"
        )


# Scheduling errors. All of these are local and recoverable: the gesture or
# transition that raised them left no partial mutation behind.

class InvalidTransitionError(ConflictError):
    """Target status is not reachable from the current status"""

    def __init__(self, from_status: str, to_status: str, allowed: Iterable[str] = ()):
        allowed = sorted(str(s) for s in allowed)
        super().__init__(
            message=f"Cannot change appointment status from '{from_status}' to '{to_status}'",
            details={
                "from_status": str(from_status),
                "to_status": str(to_status),
                "allowed": allowed,
            },
            error_code="INVALID_TRANSITION"
        )
        self.from_status = from_status
        self.to_status = to_status


class ReasonRequiredError(ValidationError):
    """Target status mandates a non-blank reason"""

    def __init__(self, to_status: str):
        super().__init__(
            message=f"A reason is required to change the status to '{to_status}'",
            details={"to_status": str(to_status)},
            error_code="REASON_REQUIRED"
        )
        self.to_status = to_status


class SchedulingConflictError(ConflictError):
    """Proposed interval overlaps one or more active appointments"""

    def __init__(self, conflicting_ids: Iterable[Any]):
        self.conflicting_ids: List[str] = [str(i) for i in conflicting_ids]
        super().__init__(
            message=f"Time slot conflicts with {len(self.conflicting_ids)} existing appointment(s)",
            details={"conflicting_ids": self.conflicting_ids},
            error_code="SCHEDULING_CONFLICT"
        )


class OutOfBusinessHoursError(ValidationError):
    """Proposed interval leaves the clinic's opening hours"""

    def __init__(self, start: datetime, end: datetime, open_hour: int, close_hour: int):
        super().__init__(
            message=f"Appointments must fall between {open_hour:02d}:00 and {close_hour:02d}:00",
            details={
                "start": start.isoformat(),
                "end": end.isoformat(),
                "open_hour": open_hour,
                "close_hour": close_hour,
            },
            error_code="OUT_OF_BUSINESS_HOURS"
        )


class MinimumDurationViolationError(ValidationError):
    """Proposed interval is shorter than the minimum appointment length"""

    def __init__(self, duration_minutes: int, minimum_minutes: int):
        super().__init__(
            message=f"Appointments must last at least {minimum_minutes} minutes",
            details={"duration_minutes": duration_minutes, "minimum_minutes": minimum_minutes},
            error_code="MINIMUM_DURATION_VIOLATION"
        )


class CommitInProgressError(ConflictError):
    """Another change to the same appointment has not been saved yet"""

    def __init__(self, appointment_id: Any):
        super().__init__(
            message="A previous change to this appointment is still being saved",
            details={"appointment_id": str(appointment_id)},
            error_code="COMMIT_IN_PROGRESS"
        )


class PersistenceFailureError(BaseCustomException):
    """Wraps a failure reported by the persistence collaborator"""

    def __init__(
        self,
        message: str = "Could not save the appointment",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
            error_code=error_code or "PERSISTENCE_FAILURE"
        )


# Response models for errors
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


def create_error_response(
    exception: BaseCustomException,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    response = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": request_id
    }

    if exception.details:
        response["details"] = exception.details

    return response


def handle_persistence_error(error: Exception, operation: str = "save appointment") -> PersistenceFailureError:
    """Convert a collaborator error into PersistenceFailureError"""
    logger.error(f"Persistence error during {operation}: {error}")

    error_message = "Could not save the appointment"
    if "connection" in str(error).lower():
        error_message = "Database connection failed"
    elif "timeout" in str(error).lower():
        error_message = "Database operation timed out"
    elif "constraint" in str(error).lower():
        error_message = "Database constraint violation"

    return PersistenceFailureError(
        message=error_message,
        details={"operation": operation, "original_error": str(error)},
    )
