"""Error taxonomy for the scheduling engine and its HTTP mapping."""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class SchedulingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Scheduling request rejected"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidRange(SchedulingError):
    status_code = 422
    default_detail = "End time must be after start time"


class PastDate(SchedulingError):
    status_code = 422
    default_detail = "Start time is before the earliest bookable instant"


class Conflict(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Vehicle is not available for the requested period"


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Forbidden(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Only the vehicle owner may do this"


class InvalidTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Booking cannot move to the requested status"


def scheduling_error_handler(_: Request, exc: SchedulingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def register_error_handlers(app: FastAPI) -> None:
    """Translate engine errors into JSON responses carrying their status code."""

    app.add_exception_handler(SchedulingError, scheduling_error_handler)
