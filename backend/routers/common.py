"""
Shared router helpers: scheduler dependency, error mapping and datetime
normalisation.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request

from recorder.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MatchError,
    ProcessStartError,
    ProcessStopError,
    RecordingConflictError,
    SchedulerError,
    ValidationError,
)
from recording_scheduler import RecordingScheduler


def get_scheduler(request: Request) -> RecordingScheduler:
    """FastAPI dependency returning the scheduler created at startup."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not running")
    return scheduler


def http_error(error: SchedulerError) -> HTTPException:
    """Map a scheduler error to the matching HTTP error."""
    if isinstance(error, (ValidationError, ConfigurationError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (InvalidTransitionError, RecordingConflictError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, MatchError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, (ProcessStartError, ProcessStopError)):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=500, detail="Internal server error")


def not_found(kind: str, item_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{kind} {item_id} not found")


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
