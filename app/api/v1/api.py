from fastapi import APIRouter
from app.core.exceptions import ErrorResponse
from app.api.v1.appointments import routes as appointments

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Appointment not found"},
    409: {"model": ErrorResponse, "description": "Scheduling conflict, invalid transition or pending save"},
    503: {"model": ErrorResponse, "description": "Persistence failure"},
}

api_router = APIRouter()
api_router.include_router(
    appointments.router,
    prefix="/appointments",
    tags=["appointments"],
    responses=ERROR_RESPONSES
)
